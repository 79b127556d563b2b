"""UTC timestamp helpers.

Every timestamp written by the core uses the same fixed-width format so
that plain string comparison orders instants correctly.
"""

from datetime import datetime, timezone
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> str:
    """Current UTC instant, e.g. ``2024-05-01T12:00:00.000000Z``."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def is_newer(candidate: str, current: Optional[str]) -> bool:
    """Last-writer-wins check: True when ``candidate`` is not older than ``current``."""
    if current is None:
        return True
    return candidate >= current
