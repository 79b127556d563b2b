"""Device agent: lifecycle manager for a machine contributing memory.

Handles the full agent lifecycle:
1. Detect local memory providers
2. Start the llama.cpp RPC server
3. Register with the host
4. Answer status probes and RPC start requests
5. Re-register periodically
"""

import threading
from typing import List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from sharedmem.common.config import SystemConfig
from sharedmem.common.errors import SharedMemError
from sharedmem.common.logging import get_logger
from sharedmem.coordinator.agent_client import AgentUnavailable, request_json
from sharedmem.events.bus import EventBus
from sharedmem.memory.accounting import ResourceAccountant
from sharedmem.memory.base import MemoryProvider
from sharedmem.memory.detection import detect_providers
from sharedmem.node.resources import HostDescription, capacity_report, describe_host
from sharedmem.runtime.llama_cpp import LlamaCppManager

log = get_logger(__name__)


class DeviceAgent:
    """Runs on a remote device and exposes it to the host.

    The agent keeps its own private event bus; nothing it publishes
    leaves the machine except through the HTTP status endpoint.
    """

    def __init__(
        self,
        config: SystemConfig,
        host_url: Optional[str] = None,
        name: Optional[str] = None,
        providers: Optional[List[MemoryProvider]] = None,
        register_interval_sec: float = 30.0,
        description: Optional[HostDescription] = None,
    ):
        self.config = config
        self.host_url = host_url.rstrip("/") if host_url else None
        self.description = description or describe_host()
        self.name = name or self.description.hostname
        self.register_interval = register_interval_sec

        self.bus = EventBus(subscriber_buffer=config.events.subscriber_buffer)
        if providers is None:
            providers = detect_providers(config.memory.provider_timeout_sec)
        self.accountant = ResourceAccountant(
            self.bus, providers, timeout_sec=config.memory.provider_timeout_sec
        )
        self.llama = LlamaCppManager(config.llama_cpp, self.bus)

        self._registered = False
        self._last_registration_error = ""
        self._stop_event = threading.Event()
        self._register_thread: Optional[threading.Thread] = None

    # -- lifecycle ---------------------------------------------------------

    def start(self, start_rpc: bool = True) -> None:
        """Start the RPC server and begin registering with the host."""
        log.info(f"[bold blue]Starting agent {self.name}[/]")
        self.bus.start()
        if start_rpc:
            try:
                self.llama.start_rpc_server()
            except SharedMemError as e:
                log.error(f"[bold red]RPC server not started:[/] {e}")

        if self.host_url:
            self._stop_event.clear()
            self._register_thread = threading.Thread(
                target=self._register_loop,
                daemon=True,
                name="agent-register",
            )
            self._register_thread.start()

    def stop(self) -> None:
        log.info(f"Stopping agent {self.name}")
        self._stop_event.set()
        if self._register_thread:
            self._register_thread.join(timeout=5)
        self.llama.shutdown()
        self.accountant.close()
        self.bus.stop()

    # -- reporting ---------------------------------------------------------

    def status(self) -> dict:
        snapshots = self.accountant.probe()
        return {
            "name": self.name,
            **self.description.to_dict(),
            "rpc_running": self.llama.is_rpc_running(),
            "rpc_port": self.config.llama_cpp.rpc_port,
            **capacity_report(snapshots),
        }

    def start_rpc(self) -> dict:
        started = self.llama.start_rpc_server()
        return {"started": started, "running": self.llama.is_rpc_running()}

    def register_with_host(self) -> bool:
        """Register (or refresh) this device with the host.

        Returns:
            True if the host accepted the registration.
        """
        report = capacity_report(self.accountant.probe())
        payload = {
            "name": self.name,
            "hostname": self.description.hostname,
            "platform": self.description.platform,
            "hardware_id": self.description.hardware_id,
            "rpc_port": self.config.llama_cpp.rpc_port,
            "memory_total_mb": report["memory_total_mb"],
            "memory_free_mb": report["memory_free_mb"],
        }
        try:
            response = request_json(
                "POST", self.host_url, "/api/agent/register", payload, timeout=10.0
            )
        except AgentUnavailable as e:
            self._last_registration_error = str(e)
            if self._registered:
                log.warning(f"Lost contact with host: {e}")
            else:
                log.warning(f"Could not reach host at {self.host_url}: {e}")
            self._registered = False
            return False

        device = response.get("device", {})
        if not self._registered:
            log.info(
                f"[bold green]Registered with host[/]: device {device.get('id')} "
                f"is {device.get('status')}"
            )
        self._registered = True
        self._last_registration_error = ""
        return True

    def _register_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.register_with_host()
            except Exception as e:
                log.warning(f"Registration attempt failed: {e}")
            self._stop_event.wait(self.register_interval)


def create_agent_app(agent: DeviceAgent) -> FastAPI:
    """Small control API the host uses to probe and steer this agent."""
    app = FastAPI(title="Shared Memory Device Agent", version="0.1.0")

    @app.exception_handler(SharedMemError)
    async def _shared_mem_error(_request, exc: SharedMemError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.get("/status")
    def status():
        return agent.status()

    @app.post("/rpc/start")
    def rpc_start():
        return agent.start_rpc()

    return app
