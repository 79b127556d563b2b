"""Capacity-aware fit analysis and layer partitioning for GGUF models."""

import glob
import math
import os
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Sequence, Tuple

from sharedmem.common.errors import ValidationError
from sharedmem.common.logging import get_logger

log = get_logger(__name__)

CONTEXT_OPTIONS = (16384, 8192, 4096, 2048)

# Quantized GGUF weights take roughly 600MB per billion parameters
MB_PER_BILLION_PARAMS = 600.0

# (max billions of parameters, typical transformer block count)
_LAYER_TABLE = (
    (1.5, 22),
    (3.5, 28),
    (8.5, 32),
    (15.0, 40),
    (35.0, 60),
    (75.0, 80),
)
_MAX_LAYERS = 126

_SPLIT_RE = re.compile(r"^(?P<stem>.+)-(?P<index>\d{5})-of-(?P<count>\d{5})\.gguf$")


class FitStatus(str, Enum):
    FITS_LOCALLY = "fits_locally"
    FITS_DISTRIBUTED = "fits_distributed"
    PARTIAL_GPU = "partial_gpu"
    TOO_LARGE = "too_large"


@dataclass
class DeviceCapacity:
    """Capacity of one candidate remote device as seen by the planner."""
    device_id: str
    name: str
    free_mb: int
    total_mb: int = 0
    ready: bool = True


@dataclass
class FitAnalysis:
    fit_status: FitStatus
    model_size_mb: int
    total_available_mb: int
    local_free_mb: int
    cluster_free_mb: int
    estimated_layers: int
    recommended_n_gpu_layers: int  # -1 means all layers on GPU
    recommended_ctx_size: int
    usable_device_ids: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["fit_status"] = self.fit_status.value
        return payload


@dataclass
class LayerAssignment:
    """Contiguous block of layers placed on one participant."""

    device_id: str
    start_layer: int
    end_layer: int  # exclusive

    @property
    def layer_count(self) -> int:
        return self.end_layer - self.start_layer

    @property
    def layers(self) -> str:
        """Inclusive range label, e.g. ``0-15``."""
        return f"{self.start_layer}-{self.end_layer - 1}"

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "layers": self.layers,
            "start_layer": self.start_layer,
            "end_layer": self.end_layer,
        }


@dataclass
class PartitionPlan:
    assignments: List[LayerAssignment]
    total_layers: int

    def summary(self) -> str:
        """Human-readable summary of the partition plan."""
        lines = [f"Partition plan ({self.total_layers} layers):"]
        for assignment in self.assignments:
            lines.append(
                f"  {assignment.device_id}: layers {assignment.layers} "
                f"({assignment.layer_count})"
            )
        return "\n".join(lines)


def estimate_model_size_mb(model_path: str) -> int:
    """Size of a model on disk in MB.

    Split GGUF files (``name-00001-of-00003.gguf``) are summed across all
    parts; a directory is summed over the GGUF files it contains.
    """
    path = os.path.expanduser(model_path)
    if os.path.isdir(path):
        files = glob.glob(os.path.join(path, "*.gguf")) or [
            os.path.join(path, name)
            for name in os.listdir(path)
            if os.path.isfile(os.path.join(path, name))
        ]
    elif os.path.isfile(path):
        match = _SPLIT_RE.match(os.path.basename(path))
        if match:
            pattern = glob.escape(match.group("stem")) + f"-*-of-{match.group('count')}.gguf"
            files = glob.glob(os.path.join(glob.escape(os.path.dirname(path)), pattern))
        else:
            files = [path]
    else:
        raise ValidationError(f"Model not found: {model_path}")

    total_bytes = sum(os.path.getsize(f) for f in files)
    return int(math.ceil(total_bytes / (1024 * 1024)))


def estimate_layer_count(model_size_mb: int) -> int:
    """Guess the transformer block count from the model's size."""
    billions = model_size_mb / MB_PER_BILLION_PARAMS
    for max_billions, layers in _LAYER_TABLE:
        if billions <= max_billions:
            return layers
    return _MAX_LAYERS


def kv_cache_mb(ctx_size: int, layers: int) -> int:
    """Approximate fp16 KV cache size for a grouped-query model."""
    # 2 tensors (K, V) x 1024 KV width x 2 bytes per element
    return int(math.ceil(ctx_size * layers * 4096 / (1024 * 1024)))


def recommend_ctx_size(headroom_mb: int, layers: int) -> int:
    """Largest context option whose KV cache fits in the remaining headroom."""
    for ctx_size in CONTEXT_OPTIONS:
        if kv_cache_mb(ctx_size, layers) <= headroom_mb:
            return ctx_size
    return CONTEXT_OPTIONS[-1]


def analyze_fit(
    model_size_mb: int,
    local_free_mb: int,
    devices: Sequence[DeviceCapacity],
    host_ram_free_mb: int = 0,
) -> FitAnalysis:
    """Classify whether a model fits locally, across the cluster, or not at all.

    Local placement wins whenever it suffices, even if the cluster could
    also hold the model. Devices that are not RPC-ready or report no free
    memory are excluded with a warning rather than failing the analysis.
    """
    warnings: List[str] = []
    usable: List[DeviceCapacity] = []
    for device in devices:
        if not device.ready:
            warnings.append(f"{device.name} is not RPC-ready and will be skipped")
        elif device.free_mb <= 0:
            warnings.append(
                f"{device.name} reports zero free memory; is the remote agent running?"
            )
        else:
            usable.append(device)

    local_free_mb = max(0, local_free_mb)
    cluster_free = sum(d.free_mb for d in usable)
    total_available = local_free_mb + cluster_free
    layers = estimate_layer_count(model_size_mb)

    if model_size_mb <= local_free_mb:
        status = FitStatus.FITS_LOCALLY
        gpu_layers = -1
        headroom = local_free_mb - model_size_mb
    elif usable and model_size_mb <= total_available:
        status = FitStatus.FITS_DISTRIBUTED
        gpu_layers = -1
        headroom = total_available - model_size_mb
    elif model_size_mb <= total_available + max(0, host_ram_free_mb):
        status = FitStatus.PARTIAL_GPU
        gpu_layers = max(0, int(math.floor(layers * total_available / model_size_mb)))
        headroom = total_available + host_ram_free_mb - model_size_mb
        warnings.append(
            f"Model exceeds GPU capacity: {gpu_layers} of {layers} layers on GPU, "
            f"the rest in system RAM (slower)"
        )
    else:
        status = FitStatus.TOO_LARGE
        gpu_layers = -1
        headroom = 0
        warnings.append(
            f"Model needs ~{model_size_mb}MB but only {total_available}MB is available"
        )

    return FitAnalysis(
        fit_status=status,
        model_size_mb=model_size_mb,
        total_available_mb=total_available,
        local_free_mb=local_free_mb,
        cluster_free_mb=cluster_free,
        estimated_layers=layers,
        recommended_n_gpu_layers=gpu_layers,
        recommended_ctx_size=recommend_ctx_size(headroom, layers),
        usable_device_ids=[d.device_id for d in usable],
        warnings=warnings,
    )


def partition_layers(
    total_layers: int,
    participants: Sequence[Tuple[str, int]],
) -> PartitionPlan:
    """Split ``total_layers`` into contiguous blocks proportional to free memory.

    ``participants`` is an ordered list of ``(device_id, free_mb)``; the
    order is the pipeline order. Every participant with capacity gets at
    least one layer while layers remain; rounding leftovers go to the
    largest fractional shares.
    """
    if total_layers <= 0:
        raise ValueError("total_layers must be positive")
    weighted = [(device_id, max(0, free)) for device_id, free in participants]
    weighted = [(device_id, free) for device_id, free in weighted if free > 0]
    if not weighted:
        raise ValueError("No participants with free memory")

    total_free = sum(free for _, free in weighted)
    exact = [total_layers * free / total_free for _, free in weighted]
    counts = [int(math.floor(value)) for value in exact]

    for index in range(len(counts)):
        if counts[index] == 0 and sum(counts) < total_layers:
            counts[index] = 1

    remainder = total_layers - sum(counts)
    order = sorted(range(len(counts)), key=lambda i: (-(exact[i] - math.floor(exact[i])), i))
    cursor = 0
    while remainder > 0:
        counts[order[cursor % len(order)]] += 1
        remainder -= 1
        cursor += 1

    assignments = []
    start = 0
    for (device_id, _), count in zip(weighted, counts):
        if count <= 0:
            continue
        assignments.append(LayerAssignment(device_id, start, start + count))
        start += count

    plan = PartitionPlan(assignments=assignments, total_layers=total_layers)
    log.debug(plan.summary())
    return plan
