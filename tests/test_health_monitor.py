"""Tests for the reachability prober."""

import importlib

import pytest

from sharedmem.coordinator.agent_client import AgentUnavailable
from sharedmem.events.types import EventKind
from sharedmem.fault_tolerance.health_monitor import ReachabilityProber
from sharedmem.memory.accounting import ResourceAccountant
from sharedmem.storage.database import ROLE_USER

health_module = importlib.import_module("sharedmem.fault_tolerance.health_monitor")


class _FakeAgentClient:
    def __init__(self):
        self.reports = {}
        self.calls = []

    def status(self, address):
        self.calls.append(address)
        report = self.reports.get(address)
        if report is None:
            raise AgentUnavailable(f"{address}: connection refused")
        return report


@pytest.fixture
def agents():
    return _FakeAgentClient()


@pytest.fixture
def tcp(monkeypatch):
    reachable = set()
    monkeypatch.setattr(
        health_module, "probe_tcp", lambda address, port, timeout=2.0: address in reachable
    )
    return reachable


@pytest.fixture
def prober(registry, admission, agents, registry_config, tcp):
    prober = ReachabilityProber(registry, admission, agents, registry_config)
    yield prober
    prober.stop()


@pytest.fixture
def device(registry, bus):
    device = registry.register("10.0.0.7", name="lab-mac")
    device = registry.decide(device.id, True, ROLE_USER)
    assert bus.wait_idle()
    return device


def test_healthy_report_marks_device_ready(prober, registry, agents, device):
    agents.reports["10.0.0.7"] = {
        "rpc_running": True,
        "memory_total_mb": 16384,
        "memory_free_mb": 12000,
    }

    assert prober.check_device(device) is True

    refreshed = registry.get_device(device.id)
    assert refreshed.rpc_status == "ready"
    assert refreshed.memory_total_mb == 16384
    assert refreshed.memory_free_mb == 12000


def test_offline_after_consecutive_failures(prober, registry, device, bus):
    subscription = bus.subscribe()

    for expected in (1, 2):
        assert prober.check_device(registry.get_device(device.id)) is False
        assert prober.failure_count(device.id) == expected
        assert registry.get_device(device.id).status == "approved"

    prober.check_device(registry.get_device(device.id))

    assert registry.get_device(device.id).status == "offline"
    assert EventKind.DEVICE_OFFLINE in [e.kind for e in subscription.drain()]


def test_recovery_brings_device_back(prober, registry, agents, device, bus):
    for _ in range(3):
        prober.check_device(registry.get_device(device.id))
    assert registry.get_device(device.id).status == "offline"
    subscription = bus.subscribe()

    agents.reports["10.0.0.7"] = {
        "rpc_running": True,
        "memory_total_mb": 8192,
        "memory_free_mb": 4096,
    }
    assert prober.check_device(registry.get_device(device.id)) is True

    assert registry.get_device(device.id).status == "approved"
    assert prober.failure_count(device.id) == 0
    assert [e.kind for e in subscription.drain()][:2] == [
        EventKind.DEVICE_ONLINE,
        EventKind.RPC_DEVICE_READY,
    ]


def test_tcp_fallback_keeps_last_known_figures(prober, registry, agents, tcp, device):
    agents.reports["10.0.0.7"] = {"memory_total_mb": 8192, "memory_free_mb": 4096}
    prober.check_device(registry.get_device(device.id))
    del agents.reports["10.0.0.7"]
    tcp.add("10.0.0.7")

    assert prober.check_device(registry.get_device(device.id)) is True
    assert registry.get_device(device.id).memory_free_mb == 4096


def test_success_resets_failure_count(prober, registry, agents, device):
    prober.check_device(registry.get_device(device.id))
    prober.check_device(registry.get_device(device.id))
    agents.reports["10.0.0.7"] = {"memory_total_mb": 1024, "memory_free_mb": 512}
    prober.check_device(registry.get_device(device.id))
    del agents.reports["10.0.0.7"]

    prober.check_device(registry.get_device(device.id))
    assert registry.get_device(device.id).status == "approved"
    assert prober.failure_count(device.id) == 1


@pytest.mark.parametrize(
    "report",
    [
        {"memory_total_mb": -1, "memory_free_mb": 0},
        {"memory_total_mb": "lots", "memory_free_mb": 0},
        {"memory_total_mb": 10**12, "memory_free_mb": 0},
    ],
)
def test_bogus_report_is_rejected(prober, registry, agents, device, report):
    agents.reports["10.0.0.7"] = report

    assert prober.check_device(registry.get_device(device.id)) is None

    refreshed = registry.get_device(device.id)
    assert refreshed.memory_total_mb == 0
    assert refreshed.rpc_status == "offline"
    assert prober.failure_count(device.id) == 0


def test_non_object_report_is_rejected_with_warning(prober, registry, agents, device, bus):
    subscription = bus.subscribe([EventKind.WARNING])
    agents.reports["10.0.0.7"] = ["not", "a", "dict"]

    assert prober.check_device(registry.get_device(device.id)) is None

    warning = subscription.get(timeout=1.0)
    assert warning.data["source"] == "prober"
    assert warning.data["device_id"] == device.id
    assert registry.get_device(device.id).rpc_status == "offline"


def test_bad_report_does_not_abort_sweep(prober, registry, agents, device):
    other = registry.register("10.0.0.9")
    registry.decide(other.id, True, ROLE_USER)
    agents.reports["10.0.0.7"] = "garbage"
    agents.reports["10.0.0.9"] = {
        "rpc_running": True,
        "memory_total_mb": 4096,
        "memory_free_mb": 2048,
    }

    prober.check_all()

    assert sorted(agents.calls) == ["10.0.0.7", "10.0.0.9"]
    assert registry.get_device(other.id).rpc_status == "ready"


def test_sweep_skips_pending_devices_and_prunes_counts(prober, registry, agents, device):
    pending = registry.register("10.0.0.8")
    prober.check_all()
    assert agents.calls == ["10.0.0.7"]
    assert prober.failure_count(device.id) == 1

    registry.remove(device.id)
    prober.check_all()
    assert prober.failure_count(device.id) == 0
    assert "10.0.0.8" not in agents.calls
    assert registry.get_device(pending.id).status == "pending"


def test_agent_without_rpc_server_is_not_ready(prober, registry, agents, device, bus):
    agents.reports["10.0.0.7"] = {
        "rpc_running": True,
        "memory_total_mb": 16384,
        "memory_free_mb": 12000,
    }
    prober.check_device(registry.get_device(device.id))
    subscription = bus.subscribe()

    agents.reports["10.0.0.7"] = {
        "rpc_running": False,
        "memory_total_mb": 16384,
        "memory_free_mb": 9000,
    }
    assert prober.check_device(registry.get_device(device.id)) is True

    refreshed = registry.get_device(device.id)
    assert refreshed.status == "approved"
    assert refreshed.rpc_status == "offline"
    assert refreshed.memory_free_mb == 9000
    assert [e.kind for e in subscription.drain()] == [EventKind.RPC_DEVICE_OFFLINE]


def test_open_rpc_port_counts_as_ready(prober, registry, agents, tcp, device):
    agents.reports["10.0.0.7"] = {"memory_total_mb": 8192, "memory_free_mb": 4096}
    tcp.add("10.0.0.7")

    assert prober.check_device(registry.get_device(device.id)) is True
    assert registry.get_device(device.id).rpc_status == "ready"


def test_usable_capacity_excludes_device_without_rpc(prober, registry, agents, device, bus):
    accountant = ResourceAccountant(bus, [])
    accountant.seed_devices([registry.get_device(device.id).to_dict()])
    agents.reports["10.0.0.7"] = {
        "rpc_running": False,
        "memory_total_mb": 16384,
        "memory_free_mb": 12000,
    }

    prober.check_device(registry.get_device(device.id))
    assert bus.wait_idle()

    assert accountant.remote_free([device.id]) == {}
    accountant.close()
