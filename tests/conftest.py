"""Shared fixtures: in-memory database, running event bus, fake providers."""

import time

import pytest

from sharedmem.common.config import RegistryConfig
from sharedmem.coordinator.admission import AdmissionController
from sharedmem.coordinator.registry import DeviceRegistry
from sharedmem.coordinator.roles import RoleService
from sharedmem.events.bus import EventBus
from sharedmem.memory.base import MemoryProvider, ProviderKind
from sharedmem.storage.database import Database


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class StaticProvider(MemoryProvider):
    """Provider returning fixed figures."""

    def __init__(self, provider_id="fake-gpu", kind=ProviderKind.NVIDIA, total_mb=8192, used_mb=0):
        super().__init__(timeout_sec=1.0)
        self.provider_id = provider_id
        self.kind = kind
        self.name = provider_id
        self.total_mb = total_mb
        self.used_mb = used_mb

    def detect(self):
        return True

    def query_used_mb(self):
        return self.used_mb


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def bus():
    event_bus = EventBus(subscriber_buffer=512)
    event_bus.start()
    yield event_bus
    event_bus.stop()


@pytest.fixture
def registry_config():
    return RegistryConfig()


@pytest.fixture
def admission(registry_config):
    return AdmissionController(registry_config)


@pytest.fixture
def registry(db, bus, admission):
    return DeviceRegistry(db, bus, admission)


@pytest.fixture
def roles(db, bus):
    return RoleService(db, bus)
