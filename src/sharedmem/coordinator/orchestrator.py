"""Host orchestrator: ties together all host-side components.

Manages the full lifecycle of the host:
- persistence and the event bus
- device registry, roles and admission
- memory accounting and the periodic snapshot tick
- reachability probing of approved devices
- llama.cpp processes and the inference scheduler
- the runtime helper watchdog, its model store and local network discovery
"""

import threading
from typing import List, Optional

from sharedmem.common.config import SystemConfig, load_config
from sharedmem.common.errors import (
    PermissionDeniedError,
    ServiceUnavailableError,
    SharedMemError,
    ValidationError,
)
from sharedmem.common.logging import get_logger
from sharedmem.coordinator.admission import AdmissionController
from sharedmem.coordinator.agent_client import AgentClient
from sharedmem.coordinator.registry import (
    Device,
    DeviceHints,
    DeviceRegistry,
    DiscoveryMethod,
)
from sharedmem.coordinator.roles import Role, RoleService
from sharedmem.coordinator.scheduler import InferenceScheduler, SessionStatus
from sharedmem.discovery.broadcast import BroadcastDiscovery
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind, warning_event
from sharedmem.fault_tolerance.health_monitor import ReachabilityProber
from sharedmem.memory.accounting import ResourceAccountant
from sharedmem.memory.base import MemoryProvider
from sharedmem.memory.detection import detect_providers
from sharedmem.runtime.llama_cpp import LlamaCppManager
from sharedmem.runtime.models import RuntimeModels, UpstreamResponse, open_stream
from sharedmem.runtime.watchdog import RuntimeSupervisor
from sharedmem.storage.database import Database

log = get_logger(__name__)


class Orchestrator:
    """Central host process for the shared memory network.

    Construction wires components together without starting anything;
    ``start()`` initializes storage and launches the background tasks.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        providers: Optional[List[MemoryProvider]] = None,
        background: bool = True,
    ):
        self.config = config or load_config()
        self.background = background

        self.db = Database(self.config.host.database_url)
        self.bus = EventBus(subscriber_buffer=self.config.events.subscriber_buffer)
        self.admission = AdmissionController(self.config.registry)
        self.roles = RoleService(self.db, self.bus)
        self.registry = DeviceRegistry(
            self.db,
            self.bus,
            self.admission,
            default_rpc_port=self.config.llama_cpp.rpc_port,
        )
        if providers is None:
            providers = detect_providers(self.config.memory.provider_timeout_sec)
        self.accountant = ResourceAccountant(
            self.bus, providers, timeout_sec=self.config.memory.provider_timeout_sec
        )
        self.llama = LlamaCppManager(self.config.llama_cpp, self.bus)
        self.agent_client = AgentClient(
            port=self.config.registry.agent_port,
            timeout_sec=self.config.registry.probe_timeout_sec,
        )
        self.scheduler = InferenceScheduler(
            db=self.db,
            bus=self.bus,
            registry=self.registry,
            accountant=self.accountant,
            llama=self.llama,
            agent_client=self.agent_client,
            admission=self.admission,
            config=self.config.llama_cpp,
        )
        self.prober = ReachabilityProber(
            self.registry, self.admission, self.agent_client, self.config.registry
        )
        self.runtime = RuntimeSupervisor(self.config.runtime, self.bus)
        self.models = RuntimeModels(
            self.config.runtime.host,
            timeout_sec=self.config.runtime.health_timeout_sec,
            pull_timeout_sec=self.config.runtime.pull_timeout_sec,
        )
        self.discovery: Optional[BroadcastDiscovery] = None

        self._started = False
        self._lifecycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._memory_thread: Optional[threading.Thread] = None

        self.bus.add_listener(self._on_device_discovered, kinds=[EventKind.DEVICE_DISCOVERED])

    @property
    def is_running(self) -> bool:
        return self._started

    def start(self) -> None:
        """Initialize storage and start background services. Idempotent."""
        with self._lifecycle_lock:
            if self._started:
                return
            self._started = True

        self.db.init_schema()
        self.bus.start()
        self.accountant.seed_devices(d.to_dict() for d in self.registry.list_devices())
        self.accountant.probe()
        log.info(f"[bold blue]Host started[/] | {self.registry.summary()}")

        if not self.background:
            return

        self._stop_event.clear()
        self._memory_thread = threading.Thread(
            target=self._memory_loop,
            daemon=True,
            name="memory-tick",
        )
        self._memory_thread.start()
        self.prober.start()
        if self.config.runtime.auto_start:
            self.runtime.start()
        if self.config.discovery.enabled:
            self.discovery = BroadcastDiscovery(
                self.config.discovery,
                self.bus,
                api_port=self.config.host.port,
                rpc_port=self.config.llama_cpp.rpc_port,
            )
            self.discovery.start()

    def stop(self) -> None:
        """Stop sessions and background services, then release resources."""
        with self._lifecycle_lock:
            if not self._started:
                return
            self._started = False

        log.info("Stopping host")
        self._stop_event.set()
        self.scheduler.stop()
        if self.discovery is not None:
            self.discovery.stop()
            self.discovery = None
        self.prober.stop()
        self.runtime.stop()
        if self._memory_thread is not None:
            self._memory_thread.join(timeout=10)
            self._memory_thread = None
        self.llama.shutdown()
        self.scheduler.close()
        self.accountant.close()
        self.bus.stop()
        self.db.close()
        log.info("Host stopped")

    # -- agent registration ------------------------------------------------

    def register_agent(
        self,
        address: str,
        name: Optional[str] = None,
        hints: Optional[DeviceHints] = None,
        memory_total_mb=None,
        memory_free_mb=None,
    ) -> Device:
        """Self-registration from a device agent, treated as passive discovery.

        Reported figures are validated before anything is written; they are
        applied only once the device is approved, by the reachability prober.
        """
        if memory_total_mb is not None or memory_free_mb is not None:
            self.admission.sanitize_capacity(memory_total_mb or 0, memory_free_mb or 0)
        return self.registry.register(address, name, hints, method=DiscoveryMethod.BROADCAST)

    # -- models and chat ---------------------------------------------------

    def authorize_model_pull(
        self,
        device_id: Optional[str] = None,
        role_id: Optional[str] = None,
    ) -> Role:
        """Resolve the requester's role and check it may download models.

        A device request uses the role of an approved device; otherwise the
        named role is checked directly.
        """
        if device_id:
            device = self.registry.get_device(device_id)
            if device.status != "approved" or not device.role_id:
                raise PermissionDeniedError(
                    f"Device '{device.name}' is {device.status} and may not download models"
                )
            role_id = device.role_id
        if not role_id:
            raise ValidationError("A model download needs a device_id or role_id")
        role = self.roles.get_role(role_id)
        if not role.can_pull_models:
            raise PermissionDeniedError(f"Role '{role.name}' may not download models")
        return role

    def open_chat_completion(self, body: bytes) -> UpstreamResponse:
        """Forward an OpenAI-style chat request to the running llama-server."""
        session = self.scheduler.current_session()
        if session is None or session.status != SessionStatus.RUNNING:
            raise ServiceUnavailableError(
                "Inference server is not running. Start an inference session first."
            )
        return open_stream(
            "POST",
            f"{self.llama.inference_base_url()}/v1/chat/completions",
            body,
            self.config.llama_cpp.proxy_timeout_sec,
        )

    # -- status ------------------------------------------------------------

    def cluster_status(self) -> dict:
        devices = []
        registered = self.registry.list_devices()
        for device in registered:
            remote = self.accountant.remote(device.id)
            devices.append(
                {
                    "id": device.id,
                    "name": device.name,
                    "address": device.address,
                    "status": device.status,
                    "rpc_status": device.rpc_status,
                    "rpc_endpoint": device.rpc_endpoint,
                    "memory_free_mb": remote.free_mb if remote else device.memory_free_mb,
                    "usable": bool(remote and remote.usable),
                }
            )
        snapshots = self.accountant.latest()
        return {
            "devices": devices,
            "local": {
                "free_mb": self.accountant.local_free_mb(snapshots),
                "host_ram_free_mb": self.accountant.host_ram_free_mb(snapshots),
                "available_mb": self.accountant.total_available(d.id for d in registered),
                "providers": [s.to_dict() for s in snapshots],
            },
            **self.scheduler.status(),
            "runtime": self.runtime.status(),
            "subscribers": self.bus.subscriber_count,
        }

    # -- background --------------------------------------------------------

    def _memory_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.accountant.publish_snapshot()
            except Exception:
                log.exception("Memory snapshot tick failed")
            self._stop_event.wait(self.config.memory.snapshot_interval_sec)

    def _on_device_discovered(self, event: DomainEvent) -> None:
        data = event.data
        hints = DeviceHints(
            hostname=data.get("hostname"),
            platform=data.get("platform"),
            rpc_port=data.get("rpc_port"),
        )
        try:
            self.registry.register(
                data["address"], data.get("name"), hints, method=DiscoveryMethod.BROADCAST
            )
        except SharedMemError as e:
            log.warning(f"Discarded beacon from {data.get('address')}: {e}")
            self.bus.publish(warning_event("discovery", str(e), address=data.get("address")))
