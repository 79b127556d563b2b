"""Distributed inference scheduler: fit analysis and session lifecycle.

At most one session is ``starting`` or ``running`` at any time. Session
creation is a compare-and-swap under the scheduler lock; everything slow
(RPC readiness checks, process launch, health polling) happens outside
the lock and re-checks the session status before applying results, so
``stop()`` can cancel a start at any point without blocking.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy import select

from sharedmem.common.config import LlamaCppConfig
from sharedmem.common.errors import (
    ConflictError,
    NoUsableDevicesError,
    ProcessLaunchError,
    SharedMemError,
    ValidationError,
)
from sharedmem.common.logging import get_logger
from sharedmem.common.timeutil import utc_now
from sharedmem.coordinator.admission import AdmissionController
from sharedmem.coordinator.agent_client import AgentClient, AgentUnavailable
from sharedmem.coordinator.partitioner import (
    DeviceCapacity,
    FitAnalysis,
    PartitionPlan,
    analyze_fit,
    estimate_layer_count,
    estimate_model_size_mb,
    partition_layers,
)
from sharedmem.coordinator.registry import Device, DeviceRegistry, DeviceStatus
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind, warning_event
from sharedmem.memory.accounting import ResourceAccountant
from sharedmem.runtime.llama_cpp import LlamaCppManager
from sharedmem.storage.database import Database, InferenceSessionRow

log = get_logger(__name__)

LOCAL_PARTICIPANT = "local"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


ACTIVE_STATUSES = (SessionStatus.STARTING, SessionStatus.RUNNING)


@dataclass
class InferenceSession:
    """One attempt to serve a model."""
    id: str
    model_path: str
    status: SessionStatus
    device_ids: List[str]
    ctx_size: int
    gpu_layers: int
    started_at: str
    layer_assignment: List[dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    stopped_at: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


def _to_session(row: InferenceSessionRow) -> InferenceSession:
    return InferenceSession(
        id=row.id,
        model_path=row.model_path,
        status=SessionStatus(row.status),
        device_ids=list(row.device_ids or []),
        ctx_size=row.ctx_size,
        gpu_layers=row.gpu_layers,
        started_at=row.started_at,
        layer_assignment=list(row.layer_assignment or []),
        warnings=list(row.warnings or []),
        error=row.error,
        stopped_at=row.stopped_at,
    )


class _ReadinessBatch:
    """Shared deadline for one round of parallel RPC readiness checks.

    A worker may report its device ready only by claiming it before the
    deadline passes and before the round is closed.
    """

    def __init__(self, timeout_sec: float, cancel: threading.Event):
        self.deadline = time.monotonic() + timeout_sec
        self.cancel = cancel
        self._lock = threading.Lock()
        self._closed = False
        self._claimed = set()

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def bounded(self, timeout: float) -> float:
        return max(0.05, min(timeout, self.remaining()))

    def expired(self) -> bool:
        return self.cancel.is_set() or self.remaining() <= 0

    def claim(self, device_id: str) -> bool:
        with self._lock:
            if self._closed or self.expired():
                return False
            self._claimed.add(device_id)
            return True

    def close(self) -> set:
        with self._lock:
            self._closed = True
            return set(self._claimed)


class InferenceScheduler:
    """Plans and supervises the single inference session of this host."""

    def __init__(
        self,
        db: Database,
        bus: EventBus,
        registry: DeviceRegistry,
        accountant: ResourceAccountant,
        llama: LlamaCppManager,
        agent_client: AgentClient,
        admission: AdmissionController,
        config: LlamaCppConfig,
    ):
        self.db = db
        self.bus = bus
        self.registry = registry
        self.accountant = accountant
        self.llama = llama
        self.agent_client = agent_client
        self.admission = admission
        self.config = config

        self._lock = threading.RLock()
        self._current: Optional[InferenceSession] = None
        self._cancel = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="rpc-ready")

        bus.add_listener(self._on_device_offline, kinds=[EventKind.DEVICE_OFFLINE])

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- queries -----------------------------------------------------------

    def current_session(self) -> Optional[InferenceSession]:
        with self._lock:
            if self._current is None:
                return None
            return InferenceSession(**{**asdict(self._current), "status": self._current.status})

    def list_sessions(self, limit: int = 50) -> List[InferenceSession]:
        with self.db.session() as session:
            rows = session.scalars(
                select(InferenceSessionRow)
                .order_by(InferenceSessionRow.started_at.desc())
                .limit(limit)
            ).all()
            return [_to_session(row) for row in rows]

    # -- analysis ----------------------------------------------------------

    def _capacities(self, devices: List[Device]) -> List[DeviceCapacity]:
        free = self.accountant.remote_free(d.id for d in devices)
        return [
            DeviceCapacity(
                device_id=d.id,
                name=d.name,
                free_mb=free.get(d.id, d.memory_free_mb),
                total_mb=d.memory_total_mb,
                ready=d.id in free,
            )
            for d in devices
        ]

    def _resolve_devices(self, device_ids: List[str]) -> List[Device]:
        devices = []
        seen = set()
        for device_id in device_ids:
            if device_id in seen:
                continue
            seen.add(device_id)
            device = self.registry.get_device(device_id)
            if device.status != DeviceStatus.APPROVED.value:
                raise ValidationError(
                    f"Device '{device.name}' is {device.status}; only approved devices can run inference"
                )
            devices.append(device)
        return devices

    def analyze(self, model_path: str, device_ids: List[str]) -> FitAnalysis:
        """Estimate whether ``model_path`` fits locally or across ``device_ids``."""
        model_size = estimate_model_size_mb(model_path)
        devices = self._resolve_devices(device_ids)
        if not self.accountant.latest():
            self.accountant.probe()
        analysis = analyze_fit(
            model_size_mb=model_size,
            local_free_mb=self.accountant.local_free_mb(),
            devices=self._capacities(devices),
            host_ram_free_mb=self.accountant.host_ram_free_mb(),
        )
        log.info(
            f"Model check {model_path}: {analysis.fit_status.value} "
            f"({model_size}MB vs {analysis.total_available_mb}MB available)"
        )
        return analysis

    # -- lifecycle ---------------------------------------------------------

    def start(
        self,
        model_path: str,
        device_ids: Optional[List[str]] = None,
        gpu_layers: Optional[int] = None,
        ctx_size: Optional[int] = None,
    ) -> InferenceSession:
        """Start a session, failing with a conflict if one is already active.

        Remote devices whose RPC server does not become reachable before the
        readiness timeout are dropped with a warning. If devices were
        requested and none remain usable, the start fails.
        """
        device_ids = list(device_ids or [])
        if ctx_size is not None and ctx_size <= 0:
            raise ValidationError("ctx_size must be positive")
        if gpu_layers is not None and gpu_layers < -1:
            raise ValidationError("gpu_layers must be -1 (all) or a non-negative count")
        model_size = estimate_model_size_mb(model_path)
        devices = self._resolve_devices(device_ids)

        session = InferenceSession(
            id=str(uuid.uuid4()),
            model_path=model_path,
            status=SessionStatus.STARTING,
            device_ids=[d.id for d in devices],
            ctx_size=ctx_size or self.config.default_ctx_size,
            gpu_layers=-1 if gpu_layers is None else gpu_layers,
            started_at=utc_now(),
        )
        with self._lock:
            if self._current is not None and self._current.active:
                raise ConflictError(
                    f"Session {self._current.id} is already {self._current.status.value}"
                )
            self._current = session
            self._cancel = threading.Event()
            cancel = self._cancel
        self._persist(session)
        self.bus.publish(DomainEvent(EventKind.INFERENCE_STARTING, {"session": session.to_dict()}))

        try:
            ready, dropped = self._ensure_remote_rpc(devices, cancel)
            if cancel.is_set():
                return self._snapshot(session)
            for device, reason in dropped:
                self._add_warning(session, f"{device.name} dropped: {reason}")
            if devices and not ready:
                raise NoUsableDevicesError(
                    "None of the selected devices reached RPC-ready status"
                )

            if ready:
                self.llama.start_rpc_server()

            plan = self._plan_layers(model_size, ready)
            endpoints = [d.rpc_endpoint for d in ready]
            with self._lock:
                if session.status != SessionStatus.STARTING:
                    return self._snapshot(session)
                session.device_ids = [d.id for d in ready]
                session.layer_assignment = [a.to_dict() for a in plan.assignments]
                self.llama.reserve_inference(session.id)
            self._persist(session)
            self.bus.publish(
                DomainEvent(
                    EventKind.LAYER_ASSIGNMENT,
                    {"session_id": session.id, "assignments": session.layer_assignment},
                )
            )

            launched = self.llama.start_inference(
                model_path, endpoints, session.ctx_size, session.gpu_layers, owner=session.id
            )
            if launched is None:
                return self._snapshot(session)
        except SharedMemError as e:
            self._fail(session, str(e))
            raise

        with self._lock:
            cancelled = session.status != SessionStatus.STARTING
        if cancelled:
            # stop() ran while we were launching
            self.llama.stop_inference(owner=session.id)
            return self._snapshot(session)

        threading.Thread(
            target=self._watch_session,
            args=(session, cancel),
            daemon=True,
            name=f"session-{session.id[:8]}",
        ).start()
        return self._snapshot(session)

    def stop(self) -> Optional[InferenceSession]:
        """Stop the current session. Safe to call at any time, including mid-start."""
        with self._lock:
            session = self._current
            if session is None or not session.active:
                return self._snapshot(session) if session else None
            session.status = SessionStatus.STOPPED
            session.stopped_at = utc_now()
            self._cancel.set()

        self.llama.stop_inference(owner=session.id)
        self._persist(session)
        log.info(f"Inference session {session.id} stopped")
        self.bus.publish(DomainEvent(EventKind.INFERENCE_STOPPED, {"session_id": session.id}))
        return self._snapshot(session)

    def status(self) -> dict:
        session = self.current_session()
        return {
            **self.llama.status(),
            "current_session": session.to_dict() if session else None,
        }

    # -- internals ---------------------------------------------------------

    def _snapshot(self, session: InferenceSession) -> InferenceSession:
        with self._lock:
            return InferenceSession(**{**asdict(session), "status": session.status})

    def _persist(self, session: InferenceSession) -> None:
        with self._lock:
            data = asdict(session)
        with self.db.session() as db_session:
            row = db_session.get(InferenceSessionRow, data["id"])
            if row is None:
                row = InferenceSessionRow(id=data["id"])
                db_session.add(row)
            row.model_path = data["model_path"]
            row.status = data["status"].value
            row.device_ids = data["device_ids"]
            row.layer_assignment = data["layer_assignment"]
            row.ctx_size = data["ctx_size"]
            row.gpu_layers = data["gpu_layers"]
            row.warnings = data["warnings"]
            row.error = data["error"]
            row.started_at = data["started_at"]
            row.stopped_at = data["stopped_at"]

    def _add_warning(self, session: InferenceSession, message: str) -> None:
        with self._lock:
            session.warnings.append(message)
        log.warning(message)
        self.bus.publish(warning_event("scheduler", message, session_id=session.id))

    def _transition(
        self,
        session: InferenceSession,
        expected: SessionStatus,
        target: SessionStatus,
        error: Optional[str] = None,
    ) -> bool:
        with self._lock:
            if session.status != expected:
                return False
            session.status = target
            if error is not None:
                session.error = error
            if target in (SessionStatus.STOPPED, SessionStatus.ERROR):
                session.stopped_at = utc_now()
        self._persist(session)
        return True

    def _fail(self, session: InferenceSession, message: str) -> None:
        if self._transition(session, SessionStatus.STARTING, SessionStatus.ERROR, message):
            log.error(f"[bold red]Inference session {session.id} failed:[/] {message}")
            self.bus.publish(
                DomainEvent(EventKind.INFERENCE_ERROR, {"session_id": session.id, "message": message})
            )

    def _plan_layers(self, model_size_mb: int, ready: List[Device]) -> PartitionPlan:
        layers = estimate_layer_count(model_size_mb)
        free = self.accountant.remote_free(d.id for d in ready)
        participants: List[Tuple[str, int]] = [
            (LOCAL_PARTICIPANT, max(1, self.accountant.local_free_mb()))
        ]
        participants += [(d.id, max(1, free.get(d.id, d.memory_free_mb))) for d in ready]
        return partition_layers(layers, participants)

    def _ensure_remote_rpc(
        self,
        devices: List[Device],
        cancel: threading.Event,
    ) -> Tuple[List[Device], List[Tuple[Device, str]]]:
        """Bring every selected device to RPC-ready, in parallel and time-bounded."""
        if not devices:
            return [], []
        batch = _ReadinessBatch(self.config.rpc_ready_timeout_sec, cancel)
        futures = {
            self._executor.submit(self._ensure_device_rpc, device, batch): device
            for device in devices
        }
        wait(futures, timeout=max(0.0, batch.remaining()) + 0.5)
        claimed = batch.close()

        ready: List[Device] = []
        dropped: List[Tuple[Device, str]] = []
        for future, device in futures.items():
            if device.id in claimed:
                ready.append(device)
                continue
            if not future.done():
                reason = "RPC readiness timed out"
            else:
                error = future.exception()
                reason = str(error) if error is not None else "RPC server unreachable"
            dropped.append((device, reason))
            if not cancel.is_set():
                self.bus.publish(
                    DomainEvent(
                        EventKind.RPC_DEVICE_ERROR,
                        {"device_id": device.id, "message": reason},
                    )
                )
        return ready, dropped

    def _ensure_device_rpc(self, device: Device, batch: "_ReadinessBatch") -> bool:
        self.bus.publish(
            DomainEvent(
                EventKind.RPC_DEVICE_CONNECTING,
                {"device_id": device.id, "endpoint": device.rpc_endpoint},
            )
        )
        reachable = self.llama.probe_rpc_endpoint(
            device.address, device.rpc_port, timeout=batch.bounded(2.0)
        )
        if not reachable and not batch.expired():
            try:
                self.agent_client.start_rpc(device.address)
            except AgentUnavailable as e:
                log.warning(f"Agent on {device.address} could not start RPC server: {e}")
                return False
            while not reachable:
                remaining = batch.remaining()
                if remaining <= 0 or batch.cancel.wait(min(0.5, remaining)):
                    return False
                reachable = self.llama.probe_rpc_endpoint(
                    device.address, device.rpc_port, timeout=batch.bounded(1.0)
                )
        if not reachable or batch.expired():
            return False

        figures = {}
        try:
            report = self.agent_client.status(device.address)
            if not isinstance(report, dict):
                raise ValidationError("status report is not an object")
            capacity = self.admission.sanitize_capacity(
                report.get("memory_total_mb"), report.get("memory_free_mb")
            )
            figures = {"memory_total_mb": capacity.total_mb, "memory_free_mb": capacity.free_mb}
        except (AgentUnavailable, SharedMemError) as e:
            log.debug(f"No usable memory report from {device.address}: {e}")

        if not batch.claim(device.id):
            log.info(f"{device.name} reached RPC-ready after the readiness deadline")
            return False
        self.bus.publish(
            DomainEvent(
                EventKind.RPC_DEVICE_READY,
                {"device_id": device.id, "endpoint": device.rpc_endpoint, **figures},
            )
        )
        return True

    def _watch_session(self, session: InferenceSession, cancel: threading.Event) -> None:
        """Move starting -> running on health, then watch for unexpected exit."""
        if self.llama.wait_inference_ready(self.config.inference_ready_timeout_sec, cancel):
            if self._transition(session, SessionStatus.STARTING, SessionStatus.RUNNING):
                log.info(f"[bold green]Inference session {session.id} running[/]")
                self.bus.publish(
                    DomainEvent(
                        EventKind.INFERENCE_STARTED,
                        {
                            "session_id": session.id,
                            "model": session.model_path,
                            "devices": session.device_ids,
                        },
                    )
                )
        elif not cancel.is_set():
            exit_code = self.llama.inference_exit_code()
            reason = (
                f"llama-server exited with code {exit_code}"
                if exit_code is not None
                else "llama-server did not become healthy in time"
            )
            self.llama.stop_inference(owner=session.id)
            self._fail(session, reason)
            return

        while not cancel.wait(1.0):
            if self.llama.is_inference_running():
                continue
            message = f"llama-server exited unexpectedly (code {self.llama.inference_exit_code()})"
            if self._transition(session, SessionStatus.RUNNING, SessionStatus.ERROR, message):
                log.error(f"[bold red]{message}[/]")
                self.bus.publish(
                    DomainEvent(
                        EventKind.INFERENCE_ERROR,
                        {"session_id": session.id, "message": message},
                    )
                )
            return

    def _on_device_offline(self, event: DomainEvent) -> None:
        device_id = event.data.get("device_id")
        with self._lock:
            session = self._current
            affected = (
                session is not None
                and session.active
                and device_id in session.device_ids
            )
        if not affected:
            return
        self.bus.publish(
            DomainEvent(
                EventKind.RPC_DEVICE_OFFLINE,
                {"device_id": device_id, "session_id": session.id},
            )
        )
        self._add_warning(session, f"Device {device_id} went offline during the session")
        self.bus.publish(
            DomainEvent(
                EventKind.SESSION_DEGRADED,
                {"session_id": session.id, "device_id": device_id},
            )
        )
