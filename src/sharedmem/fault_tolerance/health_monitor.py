"""Reachability prober for approved devices.

Runs as a background service, periodically asking each approved or
offline device's agent for its status and falling back to a plain TCP
probe of its RPC port. Consecutive failures flip a device to offline; a
successful probe brings it back.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from sharedmem.common.config import RegistryConfig
from sharedmem.common.errors import SharedMemError
from sharedmem.common.logging import get_logger
from sharedmem.common.timeutil import utc_now
from sharedmem.coordinator.admission import AdmissionController
from sharedmem.coordinator.agent_client import AgentClient, AgentUnavailable
from sharedmem.coordinator.registry import Device, DeviceRegistry, DeviceStatus
from sharedmem.events.types import warning_event
from sharedmem.runtime.llama_cpp import probe_tcp

log = get_logger(__name__)

_PROBED_STATUSES = (DeviceStatus.APPROVED.value, DeviceStatus.OFFLINE.value)


class ReachabilityProber:
    """Monitors device reachability via periodic agent status checks."""

    def __init__(
        self,
        registry: DeviceRegistry,
        admission: AdmissionController,
        agent_client: AgentClient,
        config: RegistryConfig,
    ):
        self.registry = registry
        self.admission = admission
        self.agent_client = agent_client
        self.check_interval = config.probe_interval_sec
        self.timeout = config.probe_timeout_sec
        self.failure_threshold = max(1, config.failure_threshold)

        self._failures: Dict[str, int] = {}
        self._failures_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="reachability")

    def start(self) -> None:
        """Start the prober background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._monitor_loop,
            daemon=True,
            name="reachability-prober",
        )
        self._thread.start()
        log.info("Reachability prober started")

    def stop(self) -> None:
        """Stop the prober."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        self._executor.shutdown(wait=False, cancel_futures=True)
        log.info("Reachability prober stopped")

    def _monitor_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_all()
            except Exception:
                log.exception("Reachability sweep failed")
            self._stop_event.wait(self.check_interval)

    def check_all(self) -> None:
        """Probe every approved or offline device once, in parallel."""
        devices = [d for d in self.registry.list_devices() if d.status in _PROBED_STATUSES]
        known = {d.id for d in devices}
        with self._failures_lock:
            for device_id in list(self._failures):
                if device_id not in known:
                    del self._failures[device_id]
        if not devices:
            return
        futures = {self._executor.submit(self.check_device, d): d for d in devices}
        for future, device in futures.items():
            try:
                future.result()
            except Exception:
                log.exception(f"Reachability check for {device.name} failed")

    def failure_count(self, device_id: str) -> int:
        with self._failures_lock:
            return self._failures.get(device_id, 0)

    def check_device(self, device: Device) -> Optional[bool]:
        """Probe one device and apply the result to the registry.

        Returns True when reachable, False when unreachable, and None when
        the agent answered with a report that failed validation. A
        reachable device counts as RPC-ready only when its agent reports
        the RPC server running or the RPC port accepts connections.
        """
        observed_at = utc_now()
        try:
            report = self.agent_client.status(device.address)
        except AgentUnavailable as e:
            log.debug(f"Agent on {device.address} unavailable: {e}")
            report = None

        if report is None:
            if probe_tcp(device.address, device.rpc_port, timeout=self.timeout):
                # RPC server is up without an agent; keep the last known figures
                self._reset(device.id)
                self.registry.mark_online(
                    device.id,
                    device.memory_total_mb,
                    device.memory_free_mb,
                    observed_at=observed_at,
                )
                return True
            self._record_failure(device, observed_at)
            return False

        if not isinstance(report, dict):
            self._reject(device, f"status report is {type(report).__name__}, not an object")
            return None
        try:
            capacity = self.admission.sanitize_capacity(
                report.get("memory_total_mb"), report.get("memory_free_mb")
            )
        except SharedMemError as e:
            self._reject(device, str(e))
            return None

        rpc_ready = report.get("rpc_running") is True or probe_tcp(
            device.address, device.rpc_port, timeout=self.timeout
        )
        self._reset(device.id)
        self.registry.mark_online(
            device.id,
            capacity.total_mb,
            capacity.free_mb,
            observed_at=observed_at,
            rpc_ready=rpc_ready,
        )
        return True

    def _reject(self, device: Device, reason: str) -> None:
        message = f"Rejected status report from {device.name}: {reason}"
        log.warning(message)
        self.registry.bus.publish(warning_event("prober", message, device_id=device.id))

    def _reset(self, device_id: str) -> None:
        with self._failures_lock:
            self._failures.pop(device_id, None)

    def _record_failure(self, device: Device, observed_at: str) -> None:
        with self._failures_lock:
            count = self._failures.get(device.id, 0) + 1
            self._failures[device.id] = count
        if count < self.failure_threshold:
            log.debug(f"{device.name} missed probe {count}/{self.failure_threshold}")
            return
        if device.status == DeviceStatus.APPROVED.value:
            self.registry.mark_offline(device.id, observed_at=observed_at)
