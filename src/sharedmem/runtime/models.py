"""Model management through the runtime helper service, and HTTP streaming
pass-through shared with the chat completions proxy.

The runtime helper (Ollama-compatible) owns the model store: ``/api/tags``
lists it, ``/api/pull`` downloads with NDJSON progress lines and
``/api/delete`` removes a model.
"""

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Iterator, List, Optional

from sharedmem.common.errors import (
    NotFoundError,
    ServiceUnavailableError,
    UpstreamError,
    ValidationError,
)
from sharedmem.common.logging import get_logger

log = get_logger(__name__)


@dataclass
class UpstreamResponse:
    """An open streaming response from a backing service."""
    status: int
    content_type: str
    body: Iterator[bytes]


def _iter_lines(response) -> Iterator[bytes]:
    # NDJSON progress and SSE chunks are both line-oriented
    try:
        while True:
            line = response.readline()
            if not line:
                return
            yield line
    finally:
        response.close()


def open_stream(
    method: str,
    url: str,
    body: Optional[bytes],
    timeout: float,
    content_type: str = "application/json",
) -> UpstreamResponse:
    """Send a request and hand back the response for line-by-line streaming.

    Error statuses from the service are passed through with their body;
    only a connection failure raises ``UpstreamError``.
    """
    headers = {"Content-Type": content_type} if body is not None else {}
    req = urllib.request.Request(url=url, data=body, method=method, headers=headers)
    try:
        response = urllib.request.urlopen(req, timeout=timeout)
    except urllib.error.HTTPError as e:
        response = e
    except (urllib.error.URLError, OSError) as e:
        raise UpstreamError(f"{url} unreachable: {e}") from e
    return UpstreamResponse(
        status=response.getcode(),
        content_type=response.headers.get("Content-Type", content_type),
        body=_iter_lines(response),
    )


def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > 256 or any(c.isspace() for c in name):
        raise ValidationError(f"Invalid model name: {name!r}")
    return name


class RuntimeModels:
    """Client for the runtime helper's model store."""

    def __init__(self, host: str, timeout_sec: float = 3.0, pull_timeout_sec: float = 300.0):
        self.host = host.rstrip("/")
        self.timeout_sec = timeout_sec
        self.pull_timeout_sec = pull_timeout_sec

    def list_models(self) -> List[dict]:
        url = f"{self.host}/api/tags"
        try:
            with urllib.request.urlopen(url, timeout=self.timeout_sec) as response:
                data = json.loads(response.read().decode("utf-8") or "{}")
        except (urllib.error.URLError, OSError, json.JSONDecodeError) as e:
            raise ServiceUnavailableError(
                f"Runtime service at {self.host} is not answering: {e}"
            ) from e
        models = data.get("models") if isinstance(data, dict) else None
        return models if isinstance(models, list) else []

    def pull_model_stream(self, name: str) -> UpstreamResponse:
        """Start a download and stream the service's NDJSON progress lines."""
        name = _validate_name(name)
        payload = json.dumps({"name": name, "stream": True}).encode("utf-8")
        log.info(f"[bold blue]Pulling model[/] {name} via {self.host}")
        return open_stream("POST", f"{self.host}/api/pull", payload, self.pull_timeout_sec)

    def delete_model(self, name: str) -> None:
        name = _validate_name(name)
        payload = json.dumps({"name": name}).encode("utf-8")
        req = urllib.request.Request(
            url=f"{self.host}/api/delete",
            data=payload,
            method="DELETE",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec):
                pass
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise NotFoundError(f"Model '{name}' not found") from e
            raise UpstreamError(
                f"Runtime service refused to delete '{name}': {e.code} {e.reason}"
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise UpstreamError(f"Runtime service at {self.host} unreachable: {e}") from e
        log.info(f"Model deleted: {name}")
