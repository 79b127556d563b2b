"""AMD discrete GPUs via ``rocm-smi``, with a sysfs fallback."""

import glob
import json
import os
from typing import Optional

from sharedmem.memory.base import (
    BYTES_PER_MB,
    MemoryProvider,
    ProviderError,
    ProviderKind,
    read_int_file,
    run_command,
)

ROCM_QUERY = ["rocm-smi", "--showmeminfo", "vram", "--json"]
SYSFS_PATTERN = "/sys/class/drm/*/device/mem_info_vram_{}"


def parse_rocm_json(output: str, key: str) -> int:
    """Return the first card's value for ``key`` in bytes."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ProviderError(f"rocm-smi returned invalid JSON: {e}") from e
    if not isinstance(data, dict) or not data:
        raise ProviderError("rocm-smi returned no cards")
    card = next(iter(data.values()))
    try:
        return int(card[key])
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"rocm-smi missing {key!r}") from e


def _first_sysfs_value(kind: str) -> Optional[int]:
    for path in sorted(glob.glob(SYSFS_PATTERN.format(kind))):
        try:
            value = read_int_file(path)
        except ProviderError:
            continue
        if value > 0 or kind == "used":
            return value
    return None


class AmdProvider(MemoryProvider):
    kind = ProviderKind.AMD
    provider_id = "amd"

    def detect(self) -> bool:
        try:
            total = parse_rocm_json(
                run_command(ROCM_QUERY, self.timeout_sec), "VRAM Total Memory (B)"
            )
            if total > 0:
                self.name = "AMD GPU (ROCm)"
                self.total_mb = total // BYTES_PER_MB
                return True
        except ProviderError:
            pass

        if not os.path.isdir("/sys/class/drm"):
            return False
        total = _first_sysfs_value("total")
        if not total:
            return False
        self.name = "AMD GPU (sysfs)"
        self.total_mb = total // BYTES_PER_MB
        return True

    def query_used_mb(self) -> int:
        try:
            used = parse_rocm_json(
                run_command(ROCM_QUERY, self.timeout_sec), "VRAM Total Used Memory (B)"
            )
            return used // BYTES_PER_MB
        except ProviderError:
            used = _first_sysfs_value("used")
            if used is None:
                raise
            return used // BYTES_PER_MB
