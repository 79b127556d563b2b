"""System RAM fallback provider."""

import psutil

from sharedmem.memory.base import BYTES_PER_MB, MemoryProvider, ProviderKind


class SystemRamProvider(MemoryProvider):
    kind = ProviderKind.SYSTEM_RAM
    provider_id = "system_ram"

    def detect(self) -> bool:
        self.total_mb = psutil.virtual_memory().total // BYTES_PER_MB
        self.name = "System RAM"
        return self.total_mb > 0

    def query_used_mb(self) -> int:
        vm = psutil.virtual_memory()
        return (vm.total - vm.available) // BYTES_PER_MB
