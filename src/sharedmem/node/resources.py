"""Host description reported by a device agent when it registers."""

import platform
import socket
import uuid
from dataclasses import asdict, dataclass
from typing import List

import psutil

from sharedmem.common.logging import get_logger
from sharedmem.memory.base import BYTES_PER_MB, MemorySnapshot

log = get_logger(__name__)


@dataclass
class HostDescription:
    """Identity and coarse capacity of the machine running the agent."""
    hostname: str
    platform: str
    hardware_id: str
    cpu_count: int
    ram_mb: int

    def summary(self) -> str:
        return (
            f"{self.hostname} ({self.platform}) | "
            f"CPUs: {self.cpu_count} | RAM: {self.ram_mb}MB"
        )

    def to_dict(self) -> dict:
        return asdict(self)


def hardware_id() -> str:
    """Stable-ish hardware identifier derived from the primary MAC address."""
    return f"{uuid.getnode():012x}"


def describe_host() -> HostDescription:
    description = HostDescription(
        hostname=socket.gethostname(),
        platform=f"{platform.system().lower()}-{platform.machine().lower()}",
        hardware_id=hardware_id(),
        cpu_count=psutil.cpu_count(logical=True) or 1,
        ram_mb=psutil.virtual_memory().total // BYTES_PER_MB,
    )
    log.info(f"Detected host: {description.summary()}")
    return description


def capacity_report(snapshots: List[MemorySnapshot]) -> dict:
    """Totals the agent reports to the host; the host re-validates them."""
    return {
        "memory_total_mb": sum(s.total_mb for s in snapshots),
        "memory_free_mb": sum(s.free_mb for s in snapshots),
        "providers": [s.to_dict() for s in snapshots],
    }
