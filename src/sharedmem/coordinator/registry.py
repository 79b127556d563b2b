"""Device registry and approval state machine.

Thread-safe registry backed by the ``devices`` table. Identity is the
network address: registration is a single atomic insert-or-ignore keyed
by address, so concurrent discovery of one peer always collapses to one
row. Status transitions are conditional updates (compare-and-swap on the
current status) serialized per device.

State machine::

    pending  -> approved | denied           (decide)
    approved <-> offline                    (reachability)
    approved | offline -> suspended         (administrative)
    suspended -> approved                   (reinstate)
    any -> removed                          (remove, out of band)
"""

import ipaddress
import re
import threading
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from sharedmem.common.errors import (
    InvalidTransitionError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from sharedmem.common.logging import get_logger
from sharedmem.common.timeutil import is_newer, utc_now
from sharedmem.coordinator.admission import AdmissionController
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind, warning_event
from sharedmem.storage.database import AllocationRow, Database, DeviceRow, RoleRow

log = get_logger(__name__)


class DeviceStatus(str, Enum):
    """Device lifecycle states."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    SUSPENDED = "suspended"
    OFFLINE = "offline"


class DiscoveryMethod(str, Enum):
    BROADCAST = "broadcast"
    MANUAL = "manual"


class RpcStatus(str, Enum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    READY = "ready"
    ERROR = "error"


_RPC_EVENT_STATUS = {
    EventKind.RPC_DEVICE_CONNECTING: RpcStatus.CONNECTING,
    EventKind.RPC_DEVICE_READY: RpcStatus.READY,
    EventKind.RPC_DEVICE_OFFLINE: RpcStatus.OFFLINE,
    EventKind.RPC_DEVICE_ERROR: RpcStatus.ERROR,
}

_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
_HOSTNAME_RE = re.compile(rf"^(?=.{{1,253}}$){_LABEL}(?:\.{_LABEL})*$")


@dataclass
class DeviceHints:
    """Optional, advisory details supplied by discovery or an agent."""
    hostname: Optional[str] = None
    platform: Optional[str] = None
    hardware_id: Optional[str] = None
    rpc_port: Optional[int] = None


@dataclass
class Device:
    """A peer candidate or cluster member."""
    id: str
    name: str
    address: str
    status: str
    discovery_method: str
    role_id: Optional[str]
    allocated_memory_mb: int
    rpc_port: int
    rpc_status: str
    memory_total_mb: int
    memory_free_mb: int
    hardware_id: Optional[str]
    hostname: Optional[str]
    platform: Optional[str]
    first_seen: str
    created_at: str
    last_seen: str

    @property
    def rpc_endpoint(self) -> str:
        return f"{self.address}:{self.rpc_port}"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Allocation:
    id: int
    device_id: str
    memory_mb: int
    provider: Optional[str]
    granted_at: str
    revoked_at: Optional[str]

    def to_dict(self) -> dict:
        return asdict(self)


def _to_device(row: DeviceRow) -> Device:
    return Device(
        id=row.id,
        name=row.name,
        address=row.address,
        status=row.status,
        discovery_method=row.discovery_method,
        role_id=row.role_id,
        allocated_memory_mb=row.allocated_memory_mb,
        rpc_port=row.rpc_port,
        rpc_status=row.rpc_status,
        memory_total_mb=row.memory_total_mb,
        memory_free_mb=row.memory_free_mb,
        hardware_id=row.hardware_id,
        hostname=row.hostname,
        platform=row.platform,
        first_seen=row.first_seen,
        created_at=row.created_at,
        last_seen=row.last_seen,
    )


def normalize_address(address: str) -> str:
    """Validate an IP address or hostname and return its canonical form."""
    candidate = (address or "").strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass
    if _HOSTNAME_RE.match(candidate) and not candidate.replace(".", "").isdigit():
        return candidate.lower()
    raise ValidationError(f"Malformed device address: {address!r}")


class DeviceRegistry:
    """Owns device records and every status transition."""

    def __init__(
        self,
        db: Database,
        bus: EventBus,
        admission: AdmissionController,
        default_rpc_port: int = 8181,
    ):
        self.db = db
        self.bus = bus
        self.admission = admission
        self.default_rpc_port = default_rpc_port

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._preferred_provider = "system_ram"

        bus.add_listener(self._on_rpc_event, kinds=list(_RPC_EVENT_STATUS))
        bus.add_listener(self._on_memory_stats, kinds=[EventKind.MEMORY_STATS])

    def _device_lock(self, device_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[device_id] = lock
            return lock

    # -- queries -----------------------------------------------------------

    def get_device(self, device_id: str) -> Device:
        with self.db.session() as session:
            row = session.get(DeviceRow, device_id)
            if row is None:
                raise NotFoundError(f"Device '{device_id}' not found")
            return _to_device(row)

    def find_by_address(self, address: str) -> Optional[Device]:
        with self.db.session() as session:
            row = session.scalar(
                select(DeviceRow).where(DeviceRow.address == normalize_address(address))
            )
            return _to_device(row) if row else None

    def list_devices(self, status: Optional[str] = None) -> List[Device]:
        stmt = select(DeviceRow).order_by(DeviceRow.created_at, DeviceRow.id)
        if status is not None:
            stmt = stmt.where(DeviceRow.status == status)
        with self.db.session() as session:
            return [_to_device(row) for row in session.scalars(stmt).all()]

    def list_allocations(self, device_id: str) -> List[Allocation]:
        self.get_device(device_id)
        with self.db.session() as session:
            rows = session.scalars(
                select(AllocationRow)
                .where(AllocationRow.device_id == device_id)
                .order_by(AllocationRow.id)
            ).all()
            return [
                Allocation(
                    id=row.id,
                    device_id=row.device_id,
                    memory_mb=row.memory_mb,
                    provider=row.provider,
                    granted_at=row.granted_at,
                    revoked_at=row.revoked_at,
                )
                for row in rows
            ]

    # -- registration ------------------------------------------------------

    def register(
        self,
        address: str,
        name: Optional[str] = None,
        hints: Optional[DeviceHints] = None,
        method: str = DiscoveryMethod.MANUAL,
    ) -> Device:
        """Create a device for ``address`` or refresh the existing one.

        Exactly one caller creates the row; everyone else sees the
        existing record with ``last_seen`` refreshed. Events fire only for
        the creating call.
        """
        address = normalize_address(address)
        try:
            method = DiscoveryMethod(method).value
        except ValueError as e:
            raise ValidationError(f"Unknown discovery method: {method!r}") from e
        hints = hints or DeviceHints()
        display_name = (name or "").strip() or hints.hostname or address
        now = utc_now()

        with self.db.session() as session:
            role_exists = session.get(RoleRow, self.admission.config.default_role_id) is not None
            decision = self.admission.evaluate(method=method, role_exists=role_exists)
            status = DeviceStatus.APPROVED if decision.auto_approve else DeviceStatus.PENDING

            stmt = sqlite_insert(DeviceRow).values(
                id=str(uuid.uuid4()),
                name=display_name,
                address=address,
                hardware_id=hints.hardware_id,
                hostname=hints.hostname,
                platform=hints.platform,
                role_id=decision.role_id,
                status=status.value,
                discovery_method=method,
                allocated_memory_mb=0,
                rpc_port=hints.rpc_port or self.default_rpc_port,
                rpc_status=RpcStatus.OFFLINE.value,
                memory_total_mb=0,
                memory_free_mb=0,
                first_seen=now,
                created_at=now,
                last_seen=now,
            ).on_conflict_do_nothing(index_elements=["address"])
            created = session.execute(stmt).rowcount == 1

            if not created:
                refresh = {"last_seen": now}
                for key in ("hostname", "platform", "hardware_id", "rpc_port"):
                    value = getattr(hints, key)
                    if value is not None:
                        refresh[key] = value
                session.execute(
                    update(DeviceRow).where(DeviceRow.address == address).values(**refresh)
                )

            row = session.scalar(select(DeviceRow).where(DeviceRow.address == address))
            device = _to_device(row)

        if not created:
            log.debug(f"Device {address} seen again ({device.status})")
            return device

        payload = {"device_id": device.id, "device": device.to_dict()}
        if decision.auto_approve:
            log.info(
                f"[bold green]Device auto-approved:[/] {device.name} at {address} "
                f"(role {decision.role_id})"
            )
            self.bus.publish(DomainEvent(EventKind.DEVICE_APPROVED, payload))
        else:
            log.info(f"[yellow]Device pending approval:[/] {device.name} at {address}")
            self.bus.publish(DomainEvent(EventKind.DEVICE_PENDING_APPROVAL, payload))
            if self.admission.config.trust_local_network and method == DiscoveryMethod.BROADCAST:
                self.bus.publish(warning_event("registry", decision.reason, device_id=device.id))
        return device

    # -- transitions -------------------------------------------------------

    def decide(self, device_id: str, approve: bool, role_id: Optional[str] = None) -> Device:
        """Approve or deny a pending device."""
        if approve and not role_id:
            raise ValidationError("Approving a device requires a role_id")

        with self._device_lock(device_id):
            with self.db.session() as session:
                row = session.get(DeviceRow, device_id)
                if row is None:
                    raise NotFoundError(f"Device '{device_id}' not found")
                if approve:
                    if session.get(RoleRow, role_id) is None:
                        raise ValidationError(f"Unknown role '{role_id}'")
                    values = {"status": DeviceStatus.APPROVED.value, "role_id": role_id}
                else:
                    values = {
                        "status": DeviceStatus.DENIED.value,
                        "role_id": None,
                        "allocated_memory_mb": 0,
                    }
                result = session.execute(
                    update(DeviceRow)
                    .where(
                        DeviceRow.id == device_id,
                        DeviceRow.status == DeviceStatus.PENDING.value,
                    )
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise InvalidTransitionError(
                        f"Device '{device_id}' is {row.status}; only pending devices can be decided"
                    )
                session.refresh(row)
                device = _to_device(row)

            payload = {"device_id": device.id, "device": device.to_dict()}
            if approve:
                log.info(f"[bold green]Device approved:[/] {device.name} with role {role_id}")
                self.bus.publish(DomainEvent(EventKind.DEVICE_APPROVED, payload))
            else:
                log.info(f"[red]Device denied:[/] {device.name}")
                self.bus.publish(DomainEvent(EventKind.DEVICE_DENIED, payload))
        return device

    def set_allocation(self, device_id: str, memory_mb: int) -> Device:
        """Grant ``memory_mb`` to an approved device within its role quota.

        Requests above the quota are rejected and leave the current
        allocation untouched. The previous grant is revoked and a new one
        appended to the allocation history.
        """
        if isinstance(memory_mb, bool) or not isinstance(memory_mb, int) or memory_mb < 0:
            raise ValidationError("memory_mb must be a non-negative integer")

        with self._device_lock(device_id):
            with self.db.session() as session:
                row = session.get(DeviceRow, device_id)
                if row is None:
                    raise NotFoundError(f"Device '{device_id}' not found")
                if row.status != DeviceStatus.APPROVED.value:
                    raise InvalidTransitionError(
                        f"Device '{device_id}' is {row.status}; memory can only be "
                        f"allocated to approved devices"
                    )
                role = session.get(RoleRow, row.role_id) if row.role_id else None
                if role is None:
                    raise ValidationError(f"Device '{device_id}' has no valid role")
                if memory_mb > role.max_memory_mb:
                    raise QuotaExceededError(
                        f"Requested {memory_mb}MB exceeds role '{role.name}' "
                        f"limit of {role.max_memory_mb}MB"
                    )

                now = utc_now()
                provider = self._preferred_provider
                session.execute(
                    update(AllocationRow)
                    .where(
                        AllocationRow.device_id == device_id,
                        AllocationRow.revoked_at.is_(None),
                    )
                    .values(revoked_at=now)
                )
                if memory_mb > 0:
                    session.add(
                        AllocationRow(
                            device_id=device_id,
                            memory_mb=memory_mb,
                            provider=provider,
                            granted_at=now,
                        )
                    )
                row.allocated_memory_mb = memory_mb
                session.flush()
                device = _to_device(row)

            log.info(f"Allocated {memory_mb}MB to {device.name} from {provider}")
            self.bus.publish(
                DomainEvent(
                    EventKind.MEMORY_ALLOCATED,
                    {"device_id": device.id, "memory_mb": memory_mb, "provider": provider},
                )
            )
        return device

    def remove(self, device_id: str) -> Device:
        """Delete a device in any status, cascading its allocation history."""
        with self._device_lock(device_id):
            with self.db.session() as session:
                row = session.get(DeviceRow, device_id)
                if row is None:
                    raise NotFoundError(f"Device '{device_id}' not found")
                device = _to_device(row)
                session.delete(row)

            log.info(f"Device removed: {device.name} at {device.address}")
            self.bus.publish(
                DomainEvent(
                    EventKind.DEVICE_REMOVED,
                    {"device_id": device.id, "address": device.address},
                )
            )
        with self._locks_guard:
            self._locks.pop(device_id, None)
        return device

    def mark_offline(self, device_id: str, observed_at: Optional[str] = None) -> Optional[Device]:
        """Flip an approved device to offline after failed reachability probes.

        Returns the updated device, or None when nothing changed (device
        gone, not approved, or the observation is older than the last one
        applied).
        """
        observed_at = observed_at or utc_now()
        with self._device_lock(device_id):
            with self.db.session() as session:
                row = session.get(DeviceRow, device_id)
                if row is None or not is_newer(observed_at, row.last_probe_at):
                    return None
                result = session.execute(
                    update(DeviceRow)
                    .where(
                        DeviceRow.id == device_id,
                        DeviceRow.status == DeviceStatus.APPROVED.value,
                    )
                    .values(
                        status=DeviceStatus.OFFLINE.value,
                        rpc_status=RpcStatus.OFFLINE.value,
                        memory_total_mb=0,
                        memory_free_mb=0,
                        last_probe_at=observed_at,
                    )
                )
                if result.rowcount == 0:
                    return None
                session.refresh(row)
                device = _to_device(row)

            log.warning(f"[bold red]Device offline:[/] {device.name} at {device.address}")
            self.bus.publish(
                DomainEvent(
                    EventKind.DEVICE_OFFLINE,
                    {"device_id": device.id, "device": device.to_dict()},
                )
            )
        return device

    def mark_online(
        self,
        device_id: str,
        total_mb: int,
        free_mb: int,
        observed_at: Optional[str] = None,
        rpc_ready: bool = True,
    ) -> Optional[Device]:
        """Apply a successful reachability probe.

        ``total_mb``/``free_mb`` must already be sanitized by admission.
        An offline device returns to approved and its memory figures are
        refreshed. The RPC status becomes ready only when ``rpc_ready`` is
        set; a reachable device whose RPC server is down stays offline.
        Stale observations are ignored.
        """
        observed_at = observed_at or utc_now()
        rpc_target = RpcStatus.READY if rpc_ready else RpcStatus.OFFLINE
        with self._device_lock(device_id):
            with self.db.session() as session:
                row = session.get(DeviceRow, device_id)
                if row is None or row.status not in (
                    DeviceStatus.APPROVED.value,
                    DeviceStatus.OFFLINE.value,
                ):
                    return None
                if not is_newer(observed_at, row.last_probe_at):
                    return None
                recovered = row.status == DeviceStatus.OFFLINE.value
                rpc_changed = row.rpc_status != rpc_target.value
                row.status = DeviceStatus.APPROVED.value
                row.rpc_status = rpc_target.value
                row.memory_total_mb = total_mb
                row.memory_free_mb = free_mb
                row.last_seen = observed_at
                row.last_probe_at = observed_at
                session.flush()
                device = _to_device(row)

            if recovered:
                log.info(f"[bold green]Device back online:[/] {device.name}")
                self.bus.publish(
                    DomainEvent(
                        EventKind.DEVICE_ONLINE,
                        {"device_id": device.id, "device": device.to_dict()},
                    )
                )
            if rpc_changed and rpc_ready:
                self.bus.publish(
                    DomainEvent(
                        EventKind.RPC_DEVICE_READY,
                        {
                            "device_id": device.id,
                            "endpoint": device.rpc_endpoint,
                            "source": "registry",
                            "memory_total_mb": total_mb,
                            "memory_free_mb": free_mb,
                        },
                    )
                )
            elif not rpc_ready and (rpc_changed or recovered):
                log.info(f"[yellow]RPC server down on {device.name}[/]")
                self.bus.publish(
                    DomainEvent(
                        EventKind.RPC_DEVICE_OFFLINE,
                        {
                            "device_id": device.id,
                            "endpoint": device.rpc_endpoint,
                            "source": "registry",
                            "memory_total_mb": total_mb,
                            "memory_free_mb": free_mb,
                        },
                    )
                )
        return device

    def suspend(self, device_id: str) -> Device:
        return self._administrative_transition(
            device_id,
            allowed=(DeviceStatus.APPROVED, DeviceStatus.OFFLINE),
            target=DeviceStatus.SUSPENDED,
            kind=EventKind.DEVICE_SUSPENDED,
        )

    def reinstate(self, device_id: str) -> Device:
        return self._administrative_transition(
            device_id,
            allowed=(DeviceStatus.SUSPENDED,),
            target=DeviceStatus.APPROVED,
            kind=EventKind.DEVICE_REINSTATED,
        )

    def _administrative_transition(
        self,
        device_id: str,
        allowed: tuple,
        target: DeviceStatus,
        kind: EventKind,
    ) -> Device:
        with self._device_lock(device_id):
            with self.db.session() as session:
                row = session.get(DeviceRow, device_id)
                if row is None:
                    raise NotFoundError(f"Device '{device_id}' not found")
                result = session.execute(
                    update(DeviceRow)
                    .where(
                        DeviceRow.id == device_id,
                        DeviceRow.status.in_([s.value for s in allowed]),
                    )
                    .values(status=target.value, rpc_status=RpcStatus.OFFLINE.value)
                )
                if result.rowcount == 0:
                    raise InvalidTransitionError(
                        f"Device '{device_id}' is {row.status}; cannot move to {target.value}"
                    )
                session.refresh(row)
                device = _to_device(row)

            log.info(f"Device {device.name} is now {target.value}")
            self.bus.publish(
                DomainEvent(kind, {"device_id": device.id, "device": device.to_dict()})
            )
        return device

    # -- bus reactions -----------------------------------------------------

    def _on_rpc_event(self, event: DomainEvent) -> None:
        device_id = event.data.get("device_id")
        status = _RPC_EVENT_STATUS.get(event.kind)
        if not device_id or status is None:
            return
        if event.data.get("source") == "registry":
            # already persisted by mark_online
            return
        values = {"rpc_status": status.value}
        if status == RpcStatus.READY and "memory_total_mb" in event.data:
            values["memory_total_mb"] = int(event.data["memory_total_mb"])
            values["memory_free_mb"] = int(event.data.get("memory_free_mb", 0))
        stmt = update(DeviceRow).where(DeviceRow.id == device_id)
        if status != RpcStatus.OFFLINE:
            # only approved devices can be connecting, ready or in error
            stmt = stmt.where(DeviceRow.status == DeviceStatus.APPROVED.value)
        with self._device_lock(device_id):
            with self.db.session() as session:
                session.execute(stmt.values(**values))

    def _on_memory_stats(self, event: DomainEvent) -> None:
        snapshots = event.data.get("snapshots") or []
        if snapshots:
            best = max(snapshots, key=lambda s: s.get("free_mb", 0))
            self._preferred_provider = best.get("provider_id") or best.get("kind", "system_ram")

    def summary(self) -> str:
        """Return a summary of the registry state."""
        states: Dict[str, int] = {}
        for device in self.list_devices():
            states[device.status] = states.get(device.status, 0) + 1
        parts = [f"{v} {k}" for k, v in states.items()]
        return f"Devices: {sum(states.values())} ({', '.join(parts) if parts else 'none'})"
