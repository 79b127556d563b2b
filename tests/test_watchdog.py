import importlib

import pytest

from sharedmem.common.config import RuntimeConfig
from sharedmem.events.bus import EventBus
from sharedmem.events.types import EventKind
from sharedmem.runtime.watchdog import RuntimeStatusCell, RuntimeSupervisor

watchdog_module = importlib.import_module("sharedmem.runtime.watchdog")


class _FakeProcess:
    _pid_counter = 7999

    def __init__(self):
        type(self)._pid_counter += 1
        self.pid = type(self)._pid_counter
        self.returncode = None
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = 0

    def wait(self, timeout=None):
        del timeout
        if self.returncode is None:
            self.returncode = 0
        return self.returncode

    def kill(self):
        self.returncode = -9


class _Service:
    """Fake runtime service: health flips when a process is launched."""

    def __init__(self, healthy=False, healthy_after_launch=True):
        self.healthy = healthy
        self.healthy_after_launch = healthy_after_launch
        self.launched = []

    def popen(self, cmd, *args, **kwargs):
        process = _FakeProcess()
        self.launched.append((cmd, kwargs.get("env", {})))
        self.healthy = self.healthy_after_launch
        self.process = process
        return process

    def is_healthy(self, host, timeout=3.0):
        return self.healthy


@pytest.fixture
def service(monkeypatch):
    fake = _Service()
    monkeypatch.setattr(watchdog_module, "find_binary", lambda name, bin_dir=None: None)
    monkeypatch.setattr(watchdog_module.subprocess, "Popen", fake.popen)
    monkeypatch.setattr(watchdog_module, "runtime_is_healthy", fake.is_healthy)
    return fake


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def supervisor(bus):
    config = RuntimeConfig(
        host="http://127.0.0.1:11500",
        startup_timeout_sec=0.3,
        backoff_initial_sec=0.01,
        backoff_max_sec=0.04,
    )
    return RuntimeSupervisor(config, bus)


def test_status_cell_publishes_only_on_change(bus):
    subscription = bus.subscribe()
    cell = RuntimeStatusCell(bus, "http://127.0.0.1:11434")

    assert cell.update(running=True, pid=42) is True
    assert cell.update(running=True) is False
    assert cell.update(restarts=1) is True

    events = subscription.drain()
    assert [e.kind for e in events] == [EventKind.RUNTIME_STATUS] * 2
    assert events[0].data["host"] == "http://127.0.0.1:11434"
    assert events[1].data["restarts"] == 1
    assert cell.get().pid == 42


def test_healthy_external_service_is_adopted(supervisor, service):
    service.healthy = True
    supervisor.check_once()

    status = supervisor.cell.get()
    assert status.running is True
    assert status.managed is False
    assert service.launched == []


def test_launches_service_when_absent(supervisor, service):
    supervisor.check_once()

    status = supervisor.cell.get()
    assert status.running is True
    assert status.managed is True
    assert status.pid == service.process.pid
    cmd, env = service.launched[0]
    assert cmd == ["ollama", "serve"]
    assert env["OLLAMA_HOST"] == "127.0.0.1:11500"


def test_exited_child_is_restarted(supervisor, service):
    supervisor.check_once()
    first = service.process
    first.returncode = 1
    service.healthy = False

    supervisor.check_once()

    status = supervisor.cell.get()
    assert status.running is True
    assert status.restarts == 1
    assert service.process is not first
    assert len(service.launched) == 2


def test_unhealthy_child_is_killed_and_restarted(supervisor, service):
    supervisor.check_once()
    first = service.process
    service.healthy = False

    supervisor.check_once()

    assert first.terminated
    assert supervisor.cell.get().restarts == 1


def test_launch_failure_records_error_and_backs_off(supervisor, service, monkeypatch):
    def _missing(*args, **kwargs):
        raise FileNotFoundError("ollama: not found")

    monkeypatch.setattr(watchdog_module.subprocess, "Popen", _missing)
    supervisor.check_once()
    supervisor.check_once()
    supervisor.check_once()

    status = supervisor.cell.get()
    assert status.running is False
    assert "not found" in status.last_error
    # doubled each time, capped at the maximum
    assert supervisor._backoff == 0.04


def test_never_healthy_child_is_stopped(supervisor, service):
    service.healthy_after_launch = False
    supervisor.check_once()

    status = supervisor.cell.get()
    assert status.running is False
    assert "not healthy" in status.last_error
    assert service.process.terminated


def test_stop_terminates_managed_child(supervisor, service):
    supervisor.check_once()
    process = service.process

    supervisor.stop()

    assert process.terminated
    assert supervisor.status()["running"] is False
