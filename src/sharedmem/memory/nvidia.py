"""NVIDIA discrete GPUs via ``nvidia-smi``."""

from typing import List, Tuple

from sharedmem.memory.base import (
    MemoryProvider,
    MemorySnapshot,
    ProviderError,
    ProviderKind,
    run_command,
)

QUERY_TOTAL = ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader,nounits"]
QUERY_USED = ["nvidia-smi", "--query-gpu=memory.used", "--format=csv,noheader,nounits"]


def parse_gpu_list(output: str) -> List[Tuple[str, int]]:
    """Parse ``name, total`` CSV rows, one per GPU."""
    gpus = []
    for line in output.splitlines():
        if not line.strip():
            continue
        name, _, total = line.rpartition(",")
        try:
            gpus.append((name.strip(), int(float(total.strip()))))
        except ValueError:
            continue
    return gpus


def parse_used(output: str) -> List[int]:
    used = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            used.append(int(float(line)))
        except ValueError as e:
            raise ProviderError(f"unexpected nvidia-smi output: {line!r}") from e
    return used


class NvidiaProvider(MemoryProvider):
    kind = ProviderKind.NVIDIA
    provider_id = "nvidia"

    def __init__(self, timeout_sec: float = 2.0):
        super().__init__(timeout_sec)
        self.gpus: List[Tuple[str, int]] = []

    def detect(self) -> bool:
        try:
            self.gpus = parse_gpu_list(run_command(QUERY_TOTAL, self.timeout_sec))
        except ProviderError:
            return False
        if not self.gpus:
            return False
        self.name = self.gpus[0][0]
        self.total_mb = sum(total for _, total in self.gpus)
        return True

    def read(self) -> List[MemorySnapshot]:
        # One snapshot per card, so multi-GPU hosts show each pool
        used = parse_used(run_command(QUERY_USED, self.timeout_sec))
        snapshots = []
        for index, (name, total) in enumerate(self.gpus):
            used_mb = min(used[index] if index < len(used) else 0, total)
            snapshots.append(
                MemorySnapshot(
                    provider_id=self.provider_id if index == 0 else f"{self.provider_id}:{index}",
                    kind=self.kind,
                    name=name,
                    total_mb=total,
                    used_mb=used_mb,
                    free_mb=total - used_mb,
                )
            )
        return snapshots
