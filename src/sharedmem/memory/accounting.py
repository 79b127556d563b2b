"""Memory/resource accounting across local providers and remote devices.

Local capacity comes from the detected providers, probed in parallel on
a small thread pool with a per-tick deadline. Remote capacity is a view
kept current from device and RPC events on the bus; the registry stays
the source of truth and this module never reads its state directly.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sharedmem.common.logging import get_logger
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind
from sharedmem.memory.base import MemoryProvider, MemorySnapshot, ProviderKind

log = get_logger(__name__)

_DEVICE_EVENTS = (
    EventKind.DEVICE_APPROVED,
    EventKind.DEVICE_DENIED,
    EventKind.DEVICE_SUSPENDED,
    EventKind.DEVICE_REINSTATED,
    EventKind.DEVICE_OFFLINE,
    EventKind.DEVICE_ONLINE,
    EventKind.DEVICE_REMOVED,
)
_RPC_EVENTS = (
    EventKind.RPC_DEVICE_READY,
    EventKind.RPC_DEVICE_OFFLINE,
    EventKind.RPC_DEVICE_ERROR,
)


@dataclass
class RemoteCapacity:
    """What the host currently believes about one remote device."""
    device_id: str
    approved: bool = False
    rpc_ready: bool = False
    total_mb: int = 0
    free_mb: int = 0
    allocated_mb: int = 0

    @property
    def usable(self) -> bool:
        return self.approved and self.rpc_ready


def distribute_allocation(snapshots: List[MemorySnapshot], allocated_mb: int) -> None:
    """Spread granted memory over providers proportionally to their size.

    The last provider takes the rounding remainder so the parts always
    sum to ``allocated_mb``.
    """
    if not snapshots:
        return
    total = sum(s.total_mb for s in snapshots)
    remaining = allocated_mb
    for index, snapshot in enumerate(snapshots):
        if index == len(snapshots) - 1:
            share = remaining
        elif total > 0:
            share = allocated_mb * snapshot.total_mb // total
        else:
            share = 0
        snapshot.allocated_mb = share
        remaining -= share


class ResourceAccountant:
    """Owns local snapshots and the remote capacity view."""

    def __init__(
        self,
        bus: EventBus,
        providers: List[MemoryProvider],
        timeout_sec: float = 2.0,
    ):
        self.bus = bus
        self.providers = list(providers)
        self.timeout_sec = timeout_sec

        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.providers)),
            thread_name_prefix="memory-probe",
        )
        self._inflight: Dict[str, Future] = {}
        self._latest: List[MemorySnapshot] = []
        self._remote: Dict[str, RemoteCapacity] = {}

        bus.add_listener(self._on_event, kinds=_DEVICE_EVENTS + _RPC_EVENTS + (
            EventKind.MEMORY_ALLOCATED,
        ))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- local providers ---------------------------------------------------

    def probe(self) -> List[MemorySnapshot]:
        """Read every provider in parallel, bounded by the probe timeout.

        A provider that raises or does not answer in time contributes no
        snapshot this tick. A provider still busy from a previous tick is
        not queried again until it returns.
        """
        futures: Dict[str, Future] = {}
        with self._lock:
            for provider in self.providers:
                key = provider.provider_id
                previous = self._inflight.get(key)
                if previous is not None and not previous.done():
                    log.debug(f"Provider {key} still busy, skipping this tick")
                    continue
                future = self._executor.submit(provider.read)
                self._inflight[key] = future
                futures[key] = future

        if futures:
            wait(futures.values(), timeout=self.timeout_sec)

        snapshots: List[MemorySnapshot] = []
        for provider in self.providers:
            future = futures.get(provider.provider_id)
            if future is None:
                continue
            if not future.done():
                log.warning(
                    f"Provider {provider.provider_id} exceeded {self.timeout_sec}s, omitted"
                )
                continue
            error = future.exception()
            if error is not None:
                log.debug(f"Provider {provider.provider_id} failed: {error}")
                continue
            snapshots.extend(future.result())

        distribute_allocation(snapshots, self.allocated_total_mb())
        with self._lock:
            self._latest = snapshots
        return list(snapshots)

    def publish_snapshot(self) -> List[MemorySnapshot]:
        """Probe and publish a memory_stats event, whether or not anything changed."""
        snapshots = self.probe()
        self.bus.publish(
            DomainEvent(
                EventKind.MEMORY_STATS,
                {
                    "snapshots": [s.to_dict() for s in snapshots],
                    "total_mb": sum(s.total_mb for s in snapshots),
                    "used_mb": sum(s.used_mb for s in snapshots),
                    "free_mb": sum(s.free_mb for s in snapshots),
                    "allocated_mb": sum(s.allocated_mb for s in snapshots),
                },
            )
        )
        return snapshots

    def latest(self) -> List[MemorySnapshot]:
        with self._lock:
            return list(self._latest)

    def local_free_mb(self, snapshots: Optional[List[MemorySnapshot]] = None) -> int:
        """Free accelerator memory, or free system RAM on CPU-only hosts."""
        if snapshots is None:
            snapshots = self.latest()
        accelerators = [s for s in snapshots if s.kind != ProviderKind.SYSTEM_RAM]
        if accelerators:
            return sum(s.free_mb for s in accelerators)
        return sum(s.free_mb for s in snapshots)

    def host_ram_free_mb(self, snapshots: Optional[List[MemorySnapshot]] = None) -> int:
        """Free system RAM beyond the accelerator pool, used for partial offload.

        Zero on CPU-only hosts (RAM already is the local pool) and on unified
        memory hosts (RAM and accelerator are the same pool).
        """
        if snapshots is None:
            snapshots = self.latest()
        if not any(s.kind != ProviderKind.SYSTEM_RAM for s in snapshots):
            return 0
        return sum(s.free_mb for s in snapshots if s.kind == ProviderKind.SYSTEM_RAM)

    # -- remote devices ----------------------------------------------------

    def seed_devices(self, devices: Iterable[dict]) -> None:
        """Initialize the remote view from persisted device records."""
        for device in devices:
            self._apply_device_record(device)

    def remote(self, device_id: str) -> Optional[RemoteCapacity]:
        with self._lock:
            capacity = self._remote.get(device_id)
            return RemoteCapacity(**vars(capacity)) if capacity else None

    def remote_free(self, device_ids: Iterable[str]) -> Dict[str, int]:
        """Free memory of each given device that is approved and RPC-ready."""
        with self._lock:
            result = {}
            for device_id in device_ids:
                capacity = self._remote.get(device_id)
                if capacity is not None and capacity.usable:
                    result[device_id] = capacity.free_mb
            return result

    def total_available(self, device_ids: Iterable[str]) -> int:
        """Local free capacity plus the free capacity of usable devices."""
        return self.local_free_mb() + sum(self.remote_free(device_ids).values())

    def allocated_total_mb(self) -> int:
        with self._lock:
            return sum(c.allocated_mb for c in self._remote.values() if c.approved)

    def _capacity(self, device_id: str) -> RemoteCapacity:
        capacity = self._remote.get(device_id)
        if capacity is None:
            capacity = RemoteCapacity(device_id=device_id)
            self._remote[device_id] = capacity
        return capacity

    def _apply_device_record(self, device: dict) -> None:
        with self._lock:
            capacity = self._capacity(device["id"])
            capacity.approved = device.get("status") == "approved"
            capacity.rpc_ready = capacity.approved and device.get("rpc_status") == "ready"
            capacity.total_mb = int(device.get("memory_total_mb") or 0)
            capacity.free_mb = int(device.get("memory_free_mb") or 0)
            capacity.allocated_mb = int(device.get("allocated_memory_mb") or 0)

    def _on_event(self, event: DomainEvent) -> None:
        device_id = event.data.get("device_id")
        if not device_id:
            return

        if event.kind == EventKind.DEVICE_REMOVED:
            with self._lock:
                self._remote.pop(device_id, None)
            return

        if event.kind in _DEVICE_EVENTS and "device" in event.data:
            self._apply_device_record(event.data["device"])
            return

        with self._lock:
            capacity = self._capacity(device_id)
            if event.kind == EventKind.MEMORY_ALLOCATED:
                capacity.allocated_mb = int(event.data.get("memory_mb", 0))
            elif event.kind == EventKind.RPC_DEVICE_READY:
                capacity.rpc_ready = capacity.approved
                capacity.total_mb = int(event.data.get("memory_total_mb", capacity.total_mb))
                capacity.free_mb = int(event.data.get("memory_free_mb", capacity.free_mb))
            else:
                capacity.rpc_ready = False
