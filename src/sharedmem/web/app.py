"""FastAPI control surface for the shared memory host with live event feeds."""

import asyncio
import json
from typing import Iterator, List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from sharedmem.common.config import SystemConfig, load_config
from sharedmem.common.errors import SharedMemError
from sharedmem.common.logging import get_logger
from sharedmem.coordinator.orchestrator import Orchestrator
from sharedmem.coordinator.registry import DeviceHints, DiscoveryMethod
from sharedmem.events.types import EventKind

log = get_logger(__name__)

KEEPALIVE_SEC = 15.0


class AddDeviceRequest(BaseModel):
    """Payload for manually adding a device."""

    address: str = Field(min_length=1, max_length=253)
    name: str | None = Field(default=None, max_length=128)
    hardware_id: str | None = Field(default=None, max_length=128)
    hostname: str | None = Field(default=None, max_length=253)
    platform: str | None = Field(default=None, max_length=64)
    rpc_port: int | None = Field(default=None, ge=1, le=65535)


class DecideRequest(BaseModel):
    approve: bool
    role_id: str | None = None


class ApproveRequest(BaseModel):
    role_id: str | None = None


class AllocationRequest(BaseModel):
    memory_mb: int


class RoleCreateRequest(BaseModel):
    name: str
    max_memory_mb: int
    can_pull_models: bool = False
    trust_level: int = 1


class RoleUpdateRequest(BaseModel):
    name: str | None = None
    max_memory_mb: int | None = None
    can_pull_models: bool | None = None
    trust_level: int | None = None


class ModelCheckRequest(BaseModel):
    model_path: str = Field(min_length=1)
    device_ids: List[str] = Field(default_factory=list)


class InferenceStartRequest(BaseModel):
    """Payload for starting an inference session."""

    model_path: str = Field(min_length=1)
    device_ids: List[str] = Field(default_factory=list)
    gpu_layers: int | None = None
    ctx_size: int | None = None


class PullModelRequest(BaseModel):
    """Model download request; the requester is a device or a named role."""

    name: str = Field(min_length=1, max_length=256)
    device_id: str | None = None
    role_id: str | None = None


class AgentRegisterRequest(BaseModel):
    """Self-registration sent by ``sharedmem-agent``. Every field is advisory."""

    name: str | None = Field(default=None, max_length=128)
    hostname: str | None = Field(default=None, max_length=253)
    platform: str | None = Field(default=None, max_length=64)
    hardware_id: str | None = Field(default=None, max_length=128)
    rpc_port: int | None = Field(default=None, ge=1, le=65535)
    memory_total_mb: float | None = None
    memory_free_mb: float | None = None


def _sse(event_type: str, payload: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(payload)}\n\n"


def _parse_kinds(raw: Optional[str]) -> Optional[List[EventKind]]:
    if not raw:
        return None
    kinds = []
    for token in raw.split(","):
        token = token.strip()
        if token:
            kinds.append(EventKind(token))
    return kinds or None


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    config: Optional[SystemConfig] = None,
) -> FastAPI:
    """Create the FastAPI app instance.

    The orchestrator is built lazily on startup when not supplied, so
    importing this module has no side effects.
    """
    app = FastAPI(title="Shared Memory Network Host")
    app.state.orchestrator = orchestrator
    app.state.config = config

    def _orch(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    @app.on_event("startup")
    async def _start_orchestrator() -> None:
        if app.state.orchestrator is None:
            app.state.orchestrator = Orchestrator(app.state.config or load_config())
        await run_in_threadpool(app.state.orchestrator.start)

    @app.on_event("shutdown")
    async def _stop_orchestrator() -> None:
        if app.state.orchestrator is not None:
            await run_in_threadpool(app.state.orchestrator.stop)

    @app.exception_handler(SharedMemError)
    async def _shared_mem_error(_request: Request, exc: SharedMemError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(ValueError)
    async def _value_error(_request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"error": {"kind": "validation", "message": str(exc)}},
        )

    @app.get("/health")
    def health(request: Request):
        orch = _orch(request)
        return {
            "status": "ok" if orch is not None and orch.is_running else "starting",
            "subscribers": orch.bus.subscriber_count if orch else 0,
        }

    # -- devices -----------------------------------------------------------

    @app.get("/api/devices")
    def list_devices(request: Request, status: str | None = Query(None)):
        return {"devices": [d.to_dict() for d in _orch(request).registry.list_devices(status)]}

    @app.post("/api/devices", status_code=201)
    def add_device(payload: AddDeviceRequest, request: Request):
        hints = DeviceHints(
            hostname=payload.hostname,
            platform=payload.platform,
            hardware_id=payload.hardware_id,
            rpc_port=payload.rpc_port,
        )
        device = _orch(request).registry.register(
            payload.address, payload.name, hints, method=DiscoveryMethod.MANUAL
        )
        return {"device": device.to_dict()}

    @app.get("/api/devices/{device_id}")
    def get_device(device_id: str, request: Request):
        return {"device": _orch(request).registry.get_device(device_id).to_dict()}

    @app.delete("/api/devices/{device_id}")
    def remove_device(device_id: str, request: Request):
        device = _orch(request).registry.remove(device_id)
        return {"success": True, "device_id": device.id}

    @app.post("/api/devices/{device_id}/decide")
    def decide_device(device_id: str, payload: DecideRequest, request: Request):
        device = _orch(request).registry.decide(device_id, payload.approve, payload.role_id)
        return {"device": device.to_dict()}

    @app.post("/api/devices/{device_id}/approve")
    def approve_device(device_id: str, payload: ApproveRequest, request: Request):
        device = _orch(request).registry.decide(device_id, True, payload.role_id)
        return {"device": device.to_dict()}

    @app.post("/api/devices/{device_id}/deny")
    def deny_device(device_id: str, request: Request):
        device = _orch(request).registry.decide(device_id, False)
        return {"device": device.to_dict()}

    @app.patch("/api/devices/{device_id}/memory")
    def set_device_memory(device_id: str, payload: AllocationRequest, request: Request):
        device = _orch(request).registry.set_allocation(device_id, payload.memory_mb)
        return {"device": device.to_dict()}

    @app.post("/api/devices/{device_id}/suspend")
    def suspend_device(device_id: str, request: Request):
        return {"device": _orch(request).registry.suspend(device_id).to_dict()}

    @app.post("/api/devices/{device_id}/reinstate")
    def reinstate_device(device_id: str, request: Request):
        return {"device": _orch(request).registry.reinstate(device_id).to_dict()}

    @app.get("/api/devices/{device_id}/allocations")
    def device_allocations(device_id: str, request: Request):
        allocations = _orch(request).registry.list_allocations(device_id)
        return {"allocations": [a.to_dict() for a in allocations]}

    # -- roles -------------------------------------------------------------

    @app.get("/api/permissions/roles")
    def list_roles(request: Request):
        return {"roles": [r.to_dict() for r in _orch(request).roles.list_roles()]}

    @app.post("/api/permissions/roles", status_code=201)
    def create_role(payload: RoleCreateRequest, request: Request):
        role = _orch(request).roles.create_role(
            payload.name,
            payload.max_memory_mb,
            can_pull_models=payload.can_pull_models,
            trust_level=payload.trust_level,
        )
        return {"role": role.to_dict()}

    @app.get("/api/permissions/roles/{role_id}")
    def get_role(role_id: str, request: Request):
        return {"role": _orch(request).roles.get_role(role_id).to_dict()}

    @app.patch("/api/permissions/roles/{role_id}")
    def update_role(role_id: str, payload: RoleUpdateRequest, request: Request):
        role = _orch(request).roles.update_role(
            role_id,
            name=payload.name,
            max_memory_mb=payload.max_memory_mb,
            can_pull_models=payload.can_pull_models,
            trust_level=payload.trust_level,
        )
        return {"role": role.to_dict()}

    @app.delete("/api/permissions/roles/{role_id}")
    def delete_role(role_id: str, request: Request):
        _orch(request).roles.delete_role(role_id)
        return {"success": True, "role_id": role_id}

    # -- capacity ----------------------------------------------------------

    @app.get("/api/gpu")
    def current_capacity(request: Request, refresh: bool = Query(False)):
        accountant = _orch(request).accountant
        snapshots = accountant.probe() if refresh else accountant.latest()
        return {
            "snapshots": [s.to_dict() for s in snapshots],
            "local_free_mb": accountant.local_free_mb(snapshots),
            "allocated_mb": accountant.allocated_total_mb(),
        }

    # -- cluster / inference -----------------------------------------------

    @app.post("/api/cluster/model-check")
    def model_check(payload: ModelCheckRequest, request: Request):
        analysis = _orch(request).scheduler.analyze(payload.model_path, payload.device_ids)
        return analysis.to_dict()

    @app.post("/api/cluster/inference/start")
    def start_inference(payload: InferenceStartRequest, request: Request):
        session = _orch(request).scheduler.start(
            payload.model_path,
            payload.device_ids,
            gpu_layers=payload.gpu_layers,
            ctx_size=payload.ctx_size,
        )
        return {"session": session.to_dict()}

    @app.post("/api/cluster/inference/stop")
    def stop_inference(request: Request):
        session = _orch(request).scheduler.stop()
        return {"session": session.to_dict() if session else None}

    @app.get("/api/cluster/inference/status")
    def inference_status(request: Request):
        return _orch(request).scheduler.status()

    @app.get("/api/cluster/inference/sessions")
    def inference_sessions(request: Request, limit: int = Query(50, ge=1, le=500)):
        sessions = _orch(request).scheduler.list_sessions(limit)
        return {"sessions": [s.to_dict() for s in sessions]}

    @app.post("/api/cluster/rpc/start")
    def start_rpc(request: Request):
        llama = _orch(request).llama
        started = llama.start_rpc_server()
        return {"started": started, "running": llama.is_rpc_running()}

    @app.post("/api/cluster/rpc/stop")
    def stop_rpc(request: Request):
        llama = _orch(request).llama
        stopped = llama.stop_rpc_server()
        return {"stopped": stopped, "running": llama.is_rpc_running()}

    @app.get("/api/cluster/status")
    def cluster_status(request: Request):
        return _orch(request).cluster_status()

    @app.get("/api/runtime/status")
    def runtime_status(request: Request):
        return _orch(request).runtime.status()

    # -- models ------------------------------------------------------------

    @app.get("/api/models")
    def list_models(request: Request):
        return {"models": _orch(request).models.list_models()}

    @app.post("/api/models/pull")
    def pull_model(payload: PullModelRequest, request: Request):
        """Stream the runtime service's NDJSON download progress."""
        orch = _orch(request)
        role = orch.authorize_model_pull(payload.device_id, payload.role_id)
        log.info(f"Model download {payload.name} requested under role {role.name}")
        upstream = orch.models.pull_model_stream(payload.name)
        return StreamingResponse(
            upstream.body, status_code=upstream.status, media_type="application/x-ndjson"
        )

    @app.delete("/api/models/{name:path}")
    def delete_model(name: str, request: Request):
        _orch(request).models.delete_model(name)
        return {"success": True, "name": name}

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        body = await request.body()
        upstream = await run_in_threadpool(_orch(request).open_chat_completion, body)
        return StreamingResponse(
            upstream.body, status_code=upstream.status, media_type=upstream.content_type
        )

    # -- agents ------------------------------------------------------------

    @app.post("/api/agent/register")
    def agent_register(payload: AgentRegisterRequest, request: Request):
        if request.client is None:
            raise SharedMemError("Cannot determine the agent's address")
        hints = DeviceHints(
            hostname=payload.hostname,
            platform=payload.platform,
            hardware_id=payload.hardware_id,
            rpc_port=payload.rpc_port,
        )
        device = _orch(request).register_agent(
            request.client.host,
            payload.name,
            hints,
            memory_total_mb=payload.memory_total_mb,
            memory_free_mb=payload.memory_free_mb,
        )
        return {"device": device.to_dict()}

    # -- live feeds --------------------------------------------------------

    @app.get("/api/events")
    def event_stream(
        request: Request,
        kinds: str | None = Query(None),
        max_events: int | None = Query(None, ge=1),
    ):
        """Server-sent events. No replay: re-fetch state, then consume."""
        subscription = _orch(request).bus.subscribe(_parse_kinds(kinds))

        def generate() -> Iterator[str]:
            sent = 0
            try:
                yield _sse("connected", {"subscription_id": subscription.id})
                while not subscription.closed:
                    event = subscription.get(timeout=KEEPALIVE_SEC)
                    if event is None:
                        yield ": keepalive\n\n"
                        continue
                    yield _sse(event.kind.value, event.to_dict())
                    sent += 1
                    if max_events is not None and sent >= max_events:
                        return
            finally:
                subscription.close()

        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
        return StreamingResponse(generate(), media_type="text/event-stream", headers=headers)

    @app.websocket("/ws")
    async def event_socket(websocket: WebSocket):
        orch: Orchestrator = websocket.app.state.orchestrator
        subscription = orch.bus.subscribe()
        await websocket.accept()
        disconnected = asyncio.Event()

        async def _watch_disconnect() -> None:
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                disconnected.set()

        watcher = asyncio.create_task(_watch_disconnect())
        try:
            await websocket.send_json({"type": "connected", "subscription_id": subscription.id})
            while not disconnected.is_set() and not subscription.closed:
                event = await run_in_threadpool(subscription.get, 0.5)
                if event is not None:
                    await websocket.send_json(event.to_dict())
        except WebSocketDisconnect:
            pass
        finally:
            subscription.close()
            watcher.cancel()
            log.debug(f"WebSocket subscriber {subscription.id} left ({subscription.dropped} dropped)")

    return app


app = create_app()
