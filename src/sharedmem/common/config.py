"""Configuration management for the shared memory network host.

Loads YAML-based configs and provides typed dataclasses for all settings.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


@dataclass
class HostConfig:
    """Control surface and persistence settings."""
    host: str = "0.0.0.0"
    port: int = 8080
    database_url: str = "sqlite:///./data/shared_memory.db"


@dataclass
class RegistryConfig:
    """Device registry, admission and reachability settings."""
    trust_local_network: bool = False
    default_role_id: str = "role-guest"
    max_reported_memory_mb: int = 1024 * 1024  # 1 TB ceiling for agent reports
    probe_interval_sec: float = 5.0
    probe_timeout_sec: float = 2.0
    failure_threshold: int = 3  # Consecutive failed probes before offline
    agent_port: int = 8090


@dataclass
class MemoryConfig:
    """Capacity accounting settings."""
    snapshot_interval_sec: float = 3.0
    provider_timeout_sec: float = 2.0


@dataclass
class DiscoveryConfig:
    """Local network beacon settings."""
    enabled: bool = True
    port: int = 8765
    announce_interval_sec: float = 5.0
    service_name: str = "_sharedmem._tcp.local."


@dataclass
class LlamaCppConfig:
    """llama.cpp RPC and inference server settings."""
    rpc_port: int = 8181
    inference_port: int = 8282
    bin_dir: str = "~/.sharedmem/bin"
    rpc_ready_timeout_sec: float = 10.0
    inference_ready_timeout_sec: float = 120.0
    default_ctx_size: int = 4096
    # Per-read timeout for proxied chat completions
    proxy_timeout_sec: float = 600.0


@dataclass
class RuntimeConfig:
    """Model runtime helper service (Ollama-compatible) settings."""
    auto_start: bool = True
    host: str = "http://127.0.0.1:11434"
    binary: str = "ollama"
    health_interval_sec: float = 10.0
    health_timeout_sec: float = 3.0
    startup_timeout_sec: float = 10.0
    backoff_initial_sec: float = 1.0
    backoff_max_sec: float = 60.0
    # Per-read timeout while streaming a model download
    pull_timeout_sec: float = 300.0


@dataclass
class EventsConfig:
    """Event bus settings."""
    subscriber_buffer: int = 256


@dataclass
class SystemConfig:
    """Top-level configuration combining all subsystems."""
    host: HostConfig = field(default_factory=HostConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    llama_cpp: LlamaCppConfig = field(default_factory=LlamaCppConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    events: EventsConfig = field(default_factory=EventsConfig)


def load_config(config_path: Optional[str] = None) -> SystemConfig:
    """Load configuration from a YAML file.

    If no path is provided, looks for configs/default.yaml relative to
    the project root, then falls back to defaults.

    Args:
        config_path: Optional path to a YAML config file.

    Returns:
        Populated SystemConfig instance.
    """
    config = SystemConfig()

    if config_path is None:
        project_root = Path(__file__).parent.parent.parent.parent
        default_path = project_root / "configs" / "default.yaml"
        if default_path.exists():
            config_path = str(default_path)

    if config_path and os.path.exists(config_path):
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f) or {}

        # Merge YAML values into dataclass fields, section by section
        for section in fields(config):
            values = raw.get(section.name)
            if not isinstance(values, dict):
                continue
            target = getattr(config, section.name)
            for k, v in values.items():
                if hasattr(target, k):
                    setattr(target, k, v)

    return config
