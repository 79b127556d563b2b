"""HTTP client for the device agent running on remote peers."""

import json
import urllib.error
import urllib.request
from typing import Optional


class AgentUnavailable(RuntimeError):
    """The peer did not answer, or answered with an error.

    ``status`` and ``body`` hold the HTTP status code and raw response body
    when the peer answered with an error, and are None otherwise.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


def request_json(
    method: str,
    base_url: str,
    path: str,
    payload: Optional[dict] = None,
    timeout: float = 5.0,
) -> dict:
    url = f"{base_url.rstrip('/')}{path}"
    body = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = urllib.request.Request(url=url, data=body, method=method, headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        raw = e.read().decode("utf-8", errors="replace")
        raise AgentUnavailable(f"{e.code} {e.reason}: {raw}", status=e.code, body=raw) from e
    except (urllib.error.URLError, OSError, json.JSONDecodeError) as e:
        raise AgentUnavailable(f"{url}: {e}") from e


class AgentClient:
    """Talks to ``sharedmem-agent`` instances on their control port."""

    def __init__(self, port: int = 8090, timeout_sec: float = 2.0):
        self.port = port
        self.timeout_sec = timeout_sec

    def _base_url(self, address: str) -> str:
        host = f"[{address}]" if ":" in address else address
        return f"http://{host}:{self.port}"

    def status(self, address: str) -> dict:
        """Agent self-report: RPC state and memory figures (untrusted)."""
        return request_json("GET", self._base_url(address), "/status", timeout=self.timeout_sec)

    def start_rpc(self, address: str) -> dict:
        """Ask the agent to start its RPC server if it is idle."""
        return request_json("POST", self._base_url(address), "/rpc/start", timeout=self.timeout_sec)
