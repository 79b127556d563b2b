"""Error taxonomy shared by every user-facing operation.

Each error carries a stable ``kind`` string and the HTTP status the
control surface answers with. Background tasks never raise these to a
caller; they log and publish an event instead.
"""

from typing import Any, Dict


class SharedMemError(Exception):
    """Base class for structured, user-facing errors."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(SharedMemError):
    """Malformed input (bad address, unknown role, negative amounts)."""

    kind = "validation"
    status_code = 400


class NotFoundError(SharedMemError):
    kind = "not_found"
    status_code = 404


class QuotaExceededError(SharedMemError):
    """Requested allocation is above the device role's quota."""

    kind = "quota_exceeded"
    status_code = 422


class InvalidTransitionError(SharedMemError):
    """Operation is not allowed from the device's current status."""

    kind = "invalid_transition"
    status_code = 409


class ConflictError(SharedMemError):
    kind = "conflict"
    status_code = 409


class BuiltinRoleError(SharedMemError):
    kind = "builtin_role"
    status_code = 403


class ProcessLaunchError(SharedMemError):
    """An external process (RPC server, inference server, runtime) failed to start."""

    kind = "launch_failed"
    status_code = 502


class NoUsableDevicesError(SharedMemError):
    kind = "no_usable_devices"
    status_code = 409


class PermissionDeniedError(SharedMemError):
    """The requesting device or role lacks a permission the operation needs."""

    kind = "forbidden"
    status_code = 403


class ServiceUnavailableError(SharedMemError):
    """A backing service (runtime helper, inference server) is not running."""

    kind = "unavailable"
    status_code = 503


class UpstreamError(SharedMemError):
    """A backing service answered badly or could not be reached mid-request."""

    kind = "upstream_failed"
    status_code = 502
