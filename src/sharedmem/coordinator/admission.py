"""Admission policy for newly discovered devices and agent reports."""

import math
from dataclasses import dataclass
from typing import Any, Optional

from sharedmem.common.config import RegistryConfig
from sharedmem.common.errors import ValidationError

PASSIVE_METHODS = ("broadcast",)


@dataclass(frozen=True)
class AdmissionDecision:
    """Whether a new device is approved on sight, and with which role."""

    auto_approve: bool
    role_id: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True)
class ReportedCapacity:
    total_mb: int
    free_mb: int


class AdmissionController:
    """Evaluates trust rules and sanitizes untrusted agent input."""

    def __init__(self, config: RegistryConfig):
        self.config = config

    def evaluate(self, *, method: str, role_exists: bool) -> AdmissionDecision:
        """Decide the initial status of a device that was just created."""
        if not self.config.trust_local_network:
            return AdmissionDecision(
                auto_approve=False,
                reason="local network is not trusted",
            )
        if method not in PASSIVE_METHODS:
            return AdmissionDecision(
                auto_approve=False,
                reason=f"{method} additions always require approval",
            )
        if not role_exists:
            return AdmissionDecision(
                auto_approve=False,
                reason=f"default role '{self.config.default_role_id}' does not exist",
            )
        return AdmissionDecision(auto_approve=True, role_id=self.config.default_role_id)

    def sanitize_capacity(self, total_mb: Any, free_mb: Any) -> ReportedCapacity:
        """Bounds-check memory figures reported by a remote agent.

        Raises ValidationError for non-numeric, negative or implausibly
        large values. Free memory is clamped to total.
        """
        total = _as_mb(total_mb, "memory_total_mb")
        free = _as_mb(free_mb, "memory_free_mb")
        ceiling = self.config.max_reported_memory_mb
        if total > ceiling:
            raise ValidationError(
                f"Reported memory_total_mb {total} exceeds ceiling {ceiling}"
            )
        return ReportedCapacity(total_mb=total, free_mb=min(free, total))


def _as_mb(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{label} must be a number") from e
    if math.isnan(number) or number < 0:
        raise ValidationError(f"{label} must be a non-negative number")
    if math.isinf(number):
        raise ValidationError(f"{label} must be finite")
    return int(number)
