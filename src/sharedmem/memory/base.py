"""Capacity provider abstraction.

A provider knows how to detect one kind of memory pool on this machine
and how to read its current capacity. Providers are selected at startup
by capability detection (see ``detection.py``); callers only ever see
``MemorySnapshot`` objects.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import List, Sequence

from sharedmem.common.logging import get_logger

log = get_logger(__name__)

BYTES_PER_MB = 1024 * 1024


class ProviderKind(str, Enum):
    NVIDIA = "nvidia"
    AMD = "amd"
    INTEL = "intel"
    APPLE_SILICON = "apple_silicon"
    SYSTEM_RAM = "system_ram"


class ProviderError(RuntimeError):
    """A capacity query failed; the provider is skipped for this tick."""


@dataclass
class MemorySnapshot:
    """Point-in-time capacity of one memory pool."""
    provider_id: str
    kind: ProviderKind
    name: str
    total_mb: int
    used_mb: int
    free_mb: int
    allocated_mb: int = 0  # Portion granted to approved devices

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload


class MemoryProvider(ABC):
    """One detectable memory pool."""

    kind: ProviderKind
    provider_id: str = ""
    # True when the pool is the same physical memory as system RAM
    unified_memory: bool = False

    def __init__(self, timeout_sec: float = 2.0):
        self.timeout_sec = timeout_sec
        self.name = ""
        self.total_mb = 0

    @abstractmethod
    def detect(self) -> bool:
        """Probe the environment. Populates name/total and returns True if present."""

    def query_used_mb(self) -> int:
        """Current used amount in MB. May raise ProviderError.

        Only the default ``read`` calls this; providers reporting several
        pools override ``read`` instead.
        """
        raise NotImplementedError(f"{type(self).__name__} must implement query_used_mb or read")

    def read(self) -> List[MemorySnapshot]:
        used = max(0, min(int(self.query_used_mb()), self.total_mb))
        return [
            MemorySnapshot(
                provider_id=self.provider_id,
                kind=self.kind,
                name=self.name,
                total_mb=self.total_mb,
                used_mb=used,
                free_mb=self.total_mb - used,
            )
        ]


def run_command(args: Sequence[str], timeout: float) -> str:
    """Run a query tool and return stdout, raising ProviderError on any failure."""
    try:
        result = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except FileNotFoundError as e:
        raise ProviderError(f"{args[0]} not installed") from e
    except subprocess.TimeoutExpired as e:
        raise ProviderError(f"{args[0]} timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        raise ProviderError(f"{args[0]} exited with {e.returncode}") from e
    return result.stdout


def read_int_file(path) -> int:
    try:
        with open(path, "r") as f:
            return int(f.read().strip())
    except (OSError, ValueError) as e:
        raise ProviderError(f"cannot read {path}: {e}") from e
