"""Typed domain events broadcast on the event bus.

Events are transient notifications layered on top of the persisted
entities; observers that reconnect re-fetch state and then resume the
live feed. Each event serializes to a flat JSON object tagged by
``type``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from sharedmem.common.timeutil import utc_now


class EventKind(str, Enum):
    """All event types published by the core."""
    # Device lifecycle
    DEVICE_DISCOVERED = "device_discovered"
    DEVICE_PENDING_APPROVAL = "device_pending_approval"
    DEVICE_APPROVED = "device_approved"
    DEVICE_DENIED = "device_denied"
    DEVICE_SUSPENDED = "device_suspended"
    DEVICE_REINSTATED = "device_reinstated"
    DEVICE_OFFLINE = "device_offline"
    DEVICE_ONLINE = "device_online"
    DEVICE_REMOVED = "device_removed"

    # Roles
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"

    # Memory
    MEMORY_ALLOCATED = "memory_allocated"
    MEMORY_STATS = "memory_stats"

    # RPC servers
    RPC_SERVER_READY = "rpc_server_ready"
    RPC_SERVER_OFFLINE = "rpc_server_offline"
    RPC_DEVICE_CONNECTING = "rpc_device_connecting"
    RPC_DEVICE_READY = "rpc_device_ready"
    RPC_DEVICE_OFFLINE = "rpc_device_offline"
    RPC_DEVICE_ERROR = "rpc_device_error"

    # Inference sessions
    INFERENCE_STARTING = "inference_starting"
    INFERENCE_STARTED = "inference_started"
    INFERENCE_STOPPED = "inference_stopped"
    INFERENCE_ERROR = "inference_error"
    SESSION_DEGRADED = "session_degraded"
    LAYER_ASSIGNMENT = "layer_assignment"

    # Runtime helper service
    RUNTIME_STATUS = "runtime_status"

    # Soft failures
    WARNING = "warning"
    ERROR = "error"


@dataclass
class DomainEvent:
    """A single state-change notification."""
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)
    seq: int = 0  # Assigned by the bus on publish

    def to_dict(self) -> Dict[str, Any]:
        payload = {"type": self.kind.value, "seq": self.seq, "timestamp": self.timestamp}
        payload.update(self.data)
        return payload


def warning_event(source: str, message: str, **extra: Any) -> DomainEvent:
    """Build a warning event for a soft failure that observers should see."""
    return DomainEvent(EventKind.WARNING, {"source": source, "message": message, **extra})


def error_event(source: str, message: str, **extra: Any) -> DomainEvent:
    return DomainEvent(EventKind.ERROR, {"source": source, "message": message, **extra})
