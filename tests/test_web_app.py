import importlib
import json
import threading
import urllib.error
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from conftest import StaticProvider
from sharedmem.common.config import SystemConfig
from sharedmem.common.errors import NotFoundError
from sharedmem.coordinator.orchestrator import Orchestrator
from sharedmem.coordinator.scheduler import SessionStatus
from sharedmem.runtime.models import UpstreamResponse
from sharedmem.storage.database import ROLE_ADMIN, ROLE_GUEST, ROLE_USER
from sharedmem.web.app import create_app

orchestrator_module = importlib.import_module("sharedmem.coordinator.orchestrator")
models_module = importlib.import_module("sharedmem.runtime.models")


@pytest.fixture
def orchestrator():
    config = SystemConfig()
    config.host.database_url = "sqlite://"
    config.discovery.enabled = False
    config.runtime.auto_start = False
    return Orchestrator(config, providers=[StaticProvider("gpu", total_mb=8192)], background=False)


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator=orchestrator)) as test_client:
        yield test_client


def _add(client, address, **extra):
    response = client.post("/api/devices", json={"address": address, **extra})
    assert response.status_code == 201
    return response.json()["device"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestDevices:
    def test_add_list_and_get(self, client):
        device = _add(client, "192.168.1.20", name="studio", rpc_port=50052)
        assert device["status"] == "pending"
        assert device["rpc_port"] == 50052

        again = _add(client, "192.168.1.20")
        assert again["id"] == device["id"]

        listed = client.get("/api/devices", params={"status": "pending"}).json()["devices"]
        assert [d["id"] for d in listed] == [device["id"]]
        assert client.get("/api/devices", params={"status": "approved"}).json()["devices"] == []
        assert client.get(f"/api/devices/{device['id']}").json()["device"]["name"] == "studio"

    def test_error_shapes(self, client):
        malformed = client.post("/api/devices", json={"address": "not an address!"})
        assert malformed.status_code == 400
        assert malformed.json()["error"]["kind"] == "validation"

        missing = client.get("/api/devices/nope")
        assert missing.status_code == 404
        assert missing.json()["error"]["kind"] == "not_found"

    def test_approve_and_allocate(self, client):
        device = _add(client, "192.168.1.21")

        approved = client.post(f"/api/devices/{device['id']}/approve", json={"role_id": ROLE_USER})
        assert approved.status_code == 200
        assert approved.json()["device"]["status"] == "approved"

        over = client.patch(f"/api/devices/{device['id']}/memory", json={"memory_mb": 999999})
        assert over.status_code == 422
        assert over.json()["error"]["kind"] == "quota_exceeded"

        ok = client.patch(f"/api/devices/{device['id']}/memory", json={"memory_mb": 2048})
        assert ok.status_code == 200
        assert ok.json()["device"]["allocated_memory_mb"] == 2048

        history = client.get(f"/api/devices/{device['id']}/allocations").json()["allocations"]
        assert [a["memory_mb"] for a in history] == [2048]

    def test_decide_deny(self, client):
        device = _add(client, "192.168.1.22")
        response = client.post(f"/api/devices/{device['id']}/decide", json={"approve": False})
        assert response.json()["device"]["status"] == "denied"

        allocation = client.patch(f"/api/devices/{device['id']}/memory", json={"memory_mb": 10})
        assert allocation.status_code == 409

    def test_suspend_and_reinstate(self, client):
        device = _add(client, "192.168.1.23")
        client.post(f"/api/devices/{device['id']}/approve", json={"role_id": ROLE_ADMIN})

        suspended = client.post(f"/api/devices/{device['id']}/suspend")
        assert suspended.json()["device"]["status"] == "suspended"
        reinstated = client.post(f"/api/devices/{device['id']}/reinstate")
        assert reinstated.json()["device"]["status"] == "approved"

        again = client.post(f"/api/devices/{device['id']}/reinstate")
        assert again.status_code == 409
        assert again.json()["error"]["kind"] == "invalid_transition"

    def test_remove(self, client):
        device = _add(client, "192.168.1.24")
        response = client.delete(f"/api/devices/{device['id']}")
        assert response.json() == {"success": True, "device_id": device["id"]}
        assert client.get(f"/api/devices/{device['id']}").status_code == 404


class TestRoles:
    def test_builtin_roles_listed(self, client):
        roles = client.get("/api/permissions/roles").json()["roles"]
        assert {r["id"] for r in roles} >= {ROLE_ADMIN, ROLE_USER}

    def test_custom_role_lifecycle(self, client):
        created = client.post(
            "/api/permissions/roles", json={"name": "render", "max_memory_mb": 8192, "trust_level": 2}
        )
        assert created.status_code == 201
        role_id = created.json()["role"]["id"]

        updated = client.patch(f"/api/permissions/roles/{role_id}", json={"max_memory_mb": 4096})
        assert updated.json()["role"]["max_memory_mb"] == 4096

        assert client.delete(f"/api/permissions/roles/{role_id}").json()["success"] is True
        assert client.get(f"/api/permissions/roles/{role_id}").status_code == 404

    def test_builtin_role_protected(self, client):
        response = client.delete(f"/api/permissions/roles/{ROLE_ADMIN}")
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "builtin_role"


class TestAgentRegistration:
    def test_registers_from_client_address(self, client):
        response = client.post(
            "/api/agent/register",
            json={"name": "render-01", "rpc_port": 50052, "memory_total_mb": 8192, "memory_free_mb": 4096},
        )
        assert response.status_code == 200
        device = response.json()["device"]
        assert device["address"] == "testclient"
        assert device["status"] == "pending"
        assert device["discovery_method"] == "broadcast"
        # figures are applied by the prober after approval, not at registration
        assert device["memory_total_mb"] == 0

    def test_rejects_bogus_figures(self, client):
        response = client.post("/api/agent/register", json={"memory_total_mb": -5})
        assert response.status_code == 400
        assert client.get("/api/devices").json()["devices"] == []


class TestCluster:
    def test_capacity_snapshot(self, client):
        payload = client.get("/api/gpu", params={"refresh": True}).json()
        assert [s["provider_id"] for s in payload["snapshots"]] == ["gpu"]
        assert payload["local_free_mb"] == 8192

    def test_model_check(self, client, tmp_path):
        model = tmp_path / "small.gguf"
        with open(model, "wb") as f:
            f.truncate(512 * 1024 * 1024)

        response = client.post("/api/cluster/model-check", json={"model_path": str(model)})
        assert response.status_code == 200
        assert response.json()["fit_status"] == "fits_locally"

        missing = client.post("/api/cluster/model-check", json={"model_path": str(tmp_path / "x.gguf")})
        assert missing.status_code == 400

    def test_idle_inference_endpoints(self, client):
        assert client.post("/api/cluster/inference/stop").json() == {"session": None}
        assert client.get("/api/cluster/inference/status").json()["current_session"] is None
        assert client.get("/api/cluster/inference/sessions").json() == {"sessions": []}

    def test_cluster_status(self, client):
        _add(client, "192.168.1.30")
        status = client.get("/api/cluster/status").json()
        assert [d["address"] for d in status["devices"]] == ["192.168.1.30"]
        assert status["devices"][0]["usable"] is False
        assert status["local"]["free_mb"] == 8192
        assert status["runtime"]["running"] is False

    def test_runtime_status(self, client):
        payload = client.get("/api/runtime/status").json()
        assert payload["managed"] is False


class _FakeModels:
    def __init__(self):
        self.pulled = []
        self.deleted = []

    def list_models(self):
        return [{"name": "llama3:8b", "size": 4661224676}]

    def pull_model_stream(self, name):
        self.pulled.append(name)
        lines = [b'{"status": "pulling manifest"}\n', b'{"status": "success"}\n']
        return UpstreamResponse(status=200, content_type="application/x-ndjson", body=iter(lines))

    def delete_model(self, name):
        if name == "ghost":
            raise NotFoundError(f"Model '{name}' not found")
        self.deleted.append(name)


class TestModels:
    @pytest.fixture
    def models(self, orchestrator):
        orchestrator.models = _FakeModels()
        return orchestrator.models

    def test_list(self, client, models):
        response = client.get("/api/models")
        assert response.status_code == 200
        assert response.json()["models"][0]["name"] == "llama3:8b"

    def test_pull_streams_progress_for_permitted_role(self, client, models):
        response = client.post("/api/models/pull", json={"name": "llama3:8b", "role_id": ROLE_USER})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert [json.loads(line)["status"] for line in response.text.splitlines()] == [
            "pulling manifest",
            "success",
        ]
        assert models.pulled == ["llama3:8b"]

    def test_pull_refused_without_permission(self, client, models):
        response = client.post("/api/models/pull", json={"name": "llama3:8b", "role_id": ROLE_GUEST})

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "forbidden"
        assert models.pulled == []

    def test_pull_uses_the_requesting_device_role(self, client, models):
        guest = _add(client, "192.168.1.40")
        client.post(f"/api/devices/{guest['id']}/approve", json={"role_id": ROLE_GUEST})
        pending = _add(client, "192.168.1.41")
        user = _add(client, "192.168.1.42")
        client.post(f"/api/devices/{user['id']}/approve", json={"role_id": ROLE_USER})

        for device, expected in ((guest, 403), (pending, 403), (user, 200)):
            response = client.post(
                "/api/models/pull", json={"name": "phi3", "device_id": device["id"]}
            )
            assert response.status_code == expected
        assert models.pulled == ["phi3"]

    def test_pull_needs_a_requester(self, client, models):
        response = client.post("/api/models/pull", json={"name": "phi3"})
        assert response.status_code == 400
        assert models.pulled == []

    def test_delete(self, client, models):
        assert client.delete("/api/models/library/llama3:8b").json() == {
            "success": True,
            "name": "library/llama3:8b",
        }
        assert models.deleted == ["library/llama3:8b"]
        assert client.delete("/api/models/ghost").status_code == 404

    def test_list_when_runtime_down(self, client, orchestrator, monkeypatch):
        def _refused(*args, **kwargs):
            raise urllib.error.URLError("connection refused")

        monkeypatch.setattr(models_module.urllib.request, "urlopen", _refused)
        response = client.get("/api/models")
        assert response.status_code == 503
        assert response.json()["error"]["kind"] == "unavailable"


class TestChatProxy:
    def test_no_running_session_is_unavailable(self, client):
        response = client.post("/v1/chat/completions", json={"messages": []})
        assert response.status_code == 503
        assert response.json()["error"]["kind"] == "unavailable"

    def test_forwards_to_inference_server(self, client, orchestrator, monkeypatch):
        forwarded = []

        def _open_stream(method, url, body, timeout):
            forwarded.append((method, url, json.loads(body)))
            chunks = [b'data: {"choices": []}\n', b"\n", b"data: [DONE]\n"]
            return UpstreamResponse(status=200, content_type="text/event-stream", body=iter(chunks))

        running = SimpleNamespace(status=SessionStatus.RUNNING)
        monkeypatch.setattr(orchestrator.scheduler, "current_session", lambda: running)
        monkeypatch.setattr(orchestrator_module, "open_stream", _open_stream)

        request = {"model": "local", "stream": True, "messages": [{"role": "user", "content": "hi"}]}
        response = client.post("/v1/chat/completions", json=request)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.endswith("data: [DONE]\n")
        assert forwarded == [
            ("POST", "http://127.0.0.1:8282/v1/chat/completions", request),
        ]

    def test_upstream_error_status_is_passed_through(self, client, orchestrator, monkeypatch):
        def _open_stream(method, url, body, timeout):
            error = b'{"error": {"message": "context too long"}}'
            return UpstreamResponse(status=400, content_type="application/json", body=iter([error]))

        running = SimpleNamespace(status=SessionStatus.RUNNING)
        monkeypatch.setattr(orchestrator.scheduler, "current_session", lambda: running)
        monkeypatch.setattr(orchestrator_module, "open_stream", _open_stream)

        response = client.post("/v1/chat/completions", json={"messages": []})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "context too long"


class TestLiveFeeds:
    def test_sse_stream_delivers_filtered_events(self, client, orchestrator):
        stop = threading.Event()

        def _produce():
            index = 0
            while not stop.wait(0.1):
                index += 1
                orchestrator.registry.register(f"10.1.0.{index}")

        producer = threading.Thread(target=_produce, daemon=True)
        producer.start()
        try:
            response = client.get(
                "/api/events",
                params={"kinds": "device_pending_approval", "max_events": 2},
            )
        finally:
            stop.set()
            producer.join(timeout=5)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = response.text
        assert body.startswith("event: connected")
        assert body.count("event: device_pending_approval") == 2
        assert "device_discovered" not in body

    def test_sse_rejects_unknown_kind(self, client):
        response = client.get("/api/events", params={"kinds": "bogus"})
        assert response.status_code == 400

    def test_websocket_receives_events(self, client):
        with client.websocket_connect("/ws") as websocket:
            hello = websocket.receive_json()
            assert hello["type"] == "connected"

            _add(client, "192.168.1.40")
            kinds = []
            for _ in range(5):
                message = websocket.receive_json()
                kinds.append(message["type"])
                if message["type"] == "device_pending_approval":
                    break
            assert "device_pending_approval" in kinds
