"""Intel integrated GPUs (i915/xe) sharing system RAM."""

import glob
import os

import psutil

from sharedmem.memory.base import MemoryProvider, ProviderError, ProviderKind, BYTES_PER_MB

INTEL_DRIVERS = ("i915", "xe")


def parse_meminfo(text: str) -> tuple:
    """Return (MemTotal, MemAvailable) in kB."""
    total = available = 0
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        if parts[0] == "MemTotal:":
            total = int(parts[1])
        elif parts[0] == "MemAvailable:":
            available = int(parts[1])
    return total, available


def find_intel_card(drm_root: str = "/sys/class/drm") -> str:
    """Return the DRM entry bound to an Intel graphics driver, or ''."""
    for entry in sorted(glob.glob(os.path.join(drm_root, "*"))):
        link = os.path.join(entry, "device", "driver")
        try:
            target = os.readlink(link)
        except OSError:
            continue
        driver = os.path.basename(target)
        if driver in INTEL_DRIVERS:
            return entry
    return ""


class IntelProvider(MemoryProvider):
    kind = ProviderKind.INTEL
    provider_id = "intel"

    def detect(self) -> bool:
        if not find_intel_card():
            return False
        system_mb = psutil.virtual_memory().total // BYTES_PER_MB
        # The iGPU can address about half of system RAM
        self.total_mb = system_mb // 2
        self.name = "Intel Integrated GPU"
        return self.total_mb > 0

    def query_used_mb(self) -> int:
        try:
            with open("/proc/meminfo", "r") as f:
                total_kb, available_kb = parse_meminfo(f.read())
        except OSError as e:
            raise ProviderError(f"cannot read /proc/meminfo: {e}") from e
        if total_kb <= 0:
            raise ProviderError("MemTotal missing from /proc/meminfo")
        system_used_mb = (total_kb - available_kb) // 1024
        ratio = self.total_mb / (total_kb / 1024)
        return int(system_used_mb * ratio)
