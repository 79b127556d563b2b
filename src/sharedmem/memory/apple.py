"""Apple Silicon unified memory via ``sysctl`` and ``vm_stat``."""

import re
import sys

from sharedmem.memory.base import (
    BYTES_PER_MB,
    MemoryProvider,
    ProviderError,
    ProviderKind,
    run_command,
)

ARM64_CPU_TYPE = 16777228
DEFAULT_PAGE_SIZE = 16384

_PAGE_SIZE_RE = re.compile(r"page size of (\d+) bytes")
_USED_PAGE_LINES = (
    "Pages wired down:",
    "Pages active:",
    "Pages occupied by compressor:",
)


def _sysctl(name: str, timeout: float) -> str:
    return run_command(["sysctl", "-n", name], timeout).strip()


def parse_vm_stat(output: str) -> int:
    """Used bytes: (wired + active + compressed) pages times the page size."""
    lines = output.splitlines()
    page_size = DEFAULT_PAGE_SIZE
    if lines:
        match = _PAGE_SIZE_RE.search(lines[0])
        if match:
            page_size = int(match.group(1))

    pages = 0
    for line in lines:
        line = line.strip()
        for prefix in _USED_PAGE_LINES:
            if line.startswith(prefix):
                value = line.split(":", 1)[1].strip().rstrip(".").replace(",", "")
                try:
                    pages += int(value)
                except ValueError:
                    continue
    return pages * page_size


class AppleSiliconProvider(MemoryProvider):
    kind = ProviderKind.APPLE_SILICON
    provider_id = "apple"
    unified_memory = True

    def detect(self) -> bool:
        if sys.platform != "darwin":
            return False
        try:
            brand = _sysctl("machdep.cpu.brand_string", self.timeout_sec)
        except ProviderError:
            brand = ""
        try:
            if brand:
                is_apple = brand.startswith("Apple")
            else:
                is_apple = int(_sysctl("hw.cputype", self.timeout_sec)) == ARM64_CPU_TYPE
            if not is_apple:
                return False
            total_bytes = int(_sysctl("hw.memsize", self.timeout_sec))
        except (ProviderError, ValueError):
            return False
        if total_bytes <= 0:
            return False

        try:
            model = _sysctl("hw.model", self.timeout_sec)
        except ProviderError:
            model = "Mac"
        self.name = f"Apple Silicon ({model}) Unified Memory"
        self.total_mb = total_bytes // BYTES_PER_MB
        return True

    def query_used_mb(self) -> int:
        return parse_vm_stat(run_command(["vm_stat"], self.timeout_sec)) // BYTES_PER_MB
