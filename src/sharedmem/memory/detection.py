"""Startup capability detection for memory providers."""

from typing import Iterable, List, Optional, Type

from sharedmem.common.logging import get_logger
from sharedmem.memory.amd import AmdProvider
from sharedmem.memory.apple import AppleSiliconProvider
from sharedmem.memory.base import MemoryProvider
from sharedmem.memory.intel import IntelProvider
from sharedmem.memory.nvidia import NvidiaProvider
from sharedmem.memory.system_ram import SystemRamProvider

log = get_logger(__name__)

ACCELERATOR_PROVIDERS: List[Type[MemoryProvider]] = [
    NvidiaProvider,
    AmdProvider,
    IntelProvider,
    AppleSiliconProvider,
]


def detect_providers(
    timeout_sec: float = 2.0,
    candidates: Optional[Iterable[MemoryProvider]] = None,
    fallback: Optional[MemoryProvider] = None,
) -> List[MemoryProvider]:
    """Instantiate and detect every known provider.

    The system RAM fallback is added only when no unified-memory provider
    was found, otherwise the same physical pool would be counted twice.
    """
    if candidates is None:
        candidates = [cls(timeout_sec=timeout_sec) for cls in ACCELERATOR_PROVIDERS]
    if fallback is None:
        fallback = SystemRamProvider(timeout_sec=timeout_sec)

    found = []
    for provider in candidates:
        try:
            present = provider.detect()
        except Exception as e:
            log.warning(f"Provider {provider.provider_id} detection failed: {e}")
            continue
        if present:
            log.info(
                f"[bold green]Detected memory provider:[/] {provider.name} "
                f"({provider.total_mb}MB)"
            )
            found.append(provider)

    if any(p.unified_memory for p in found):
        log.info("Unified memory detected, skipping system RAM provider")
    elif fallback.detect():
        found.append(fallback)

    return found
