"""Tests for capacity providers, detection and resource accounting."""

import importlib
import os
import threading
import time

import pytest

from conftest import StaticProvider
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind
from sharedmem.memory.accounting import ResourceAccountant, distribute_allocation
from sharedmem.memory.amd import parse_rocm_json
from sharedmem.memory.apple import parse_vm_stat
from sharedmem.memory.base import MemoryProvider, MemorySnapshot, ProviderError, ProviderKind
from sharedmem.memory.detection import detect_providers
from sharedmem.memory.intel import find_intel_card, parse_meminfo
from sharedmem.memory.nvidia import NvidiaProvider, parse_gpu_list, parse_used

nvidia_module = importlib.import_module("sharedmem.memory.nvidia")


class _FailingProvider(StaticProvider):
    def query_used_mb(self):
        raise ProviderError("driver crashed")


class _HangingProvider(StaticProvider):
    def __init__(self, release: threading.Event, **kwargs):
        super().__init__(**kwargs)
        self.release = release
        self.calls = 0

    def query_used_mb(self):
        self.calls += 1
        self.release.wait(5)
        return 0


class TestParsers:
    def test_nvidia_gpu_list(self):
        output = "NVIDIA GeForce RTX 3090, 24576\nNVIDIA RTX A2000, 6138\n\n"
        assert parse_gpu_list(output) == [
            ("NVIDIA GeForce RTX 3090", 24576),
            ("NVIDIA RTX A2000", 6138),
        ]

    def test_nvidia_used_rejects_garbage(self):
        assert parse_used("100\n200\n") == [100, 200]
        with pytest.raises(ProviderError):
            parse_used("[N/A]\n")

    def test_rocm_json(self):
        output = '{"card0": {"VRAM Total Memory (B)": "17163091968", "VRAM Total Used Memory (B)": "10485760"}}'
        assert parse_rocm_json(output, "VRAM Total Memory (B)") == 17163091968
        with pytest.raises(ProviderError):
            parse_rocm_json("{}", "VRAM Total Memory (B)")
        with pytest.raises(ProviderError):
            parse_rocm_json("not json", "VRAM Total Memory (B)")

    def test_vm_stat(self):
        output = (
            "Mach Virtual Memory Statistics: (page size of 16384 bytes)\n"
            "Pages free:                               12345.\n"
            "Pages active:                             100.\n"
            "Pages wired down:                          50.\n"
            "Pages occupied by compressor:              10.\n"
        )
        assert parse_vm_stat(output) == 160 * 16384

    def test_meminfo(self):
        text = "MemTotal:       16318480 kB\nMemFree:  1000 kB\nMemAvailable:   8159240 kB\n"
        assert parse_meminfo(text) == (16318480, 8159240)

    def test_find_intel_card(self, tmp_path):
        card = tmp_path / "card0" / "device"
        card.mkdir(parents=True)
        os.symlink("/sys/bus/pci/drivers/i915", card / "driver")
        other = tmp_path / "card1" / "device"
        other.mkdir(parents=True)
        os.symlink("/sys/bus/pci/drivers/amdgpu", other / "driver")

        assert find_intel_card(str(tmp_path)) == str(tmp_path / "card0")


class TestNvidiaProvider:
    def test_one_snapshot_per_gpu(self, monkeypatch):
        outputs = {
            "--query-gpu=name,memory.total": "GPU A, 8192\nGPU B, 4096\n",
            "--query-gpu=memory.used": "1024\n5000\n",
        }
        monkeypatch.setattr(
            nvidia_module, "run_command", lambda args, timeout: outputs[args[1]]
        )
        provider = NvidiaProvider()
        assert provider.detect() is True
        assert provider.total_mb == 12288

        snapshots = provider.read()
        assert [s.provider_id for s in snapshots] == ["nvidia", "nvidia:1"]
        assert snapshots[0].free_mb == 7168
        # used is clamped to total
        assert snapshots[1].used_mb == 4096
        assert snapshots[1].free_mb == 0

    def test_missing_tool_means_not_detected(self, monkeypatch):
        def _missing(args, timeout):
            raise ProviderError("nvidia-smi not installed")

        monkeypatch.setattr(nvidia_module, "run_command", _missing)
        assert NvidiaProvider().detect() is False


class TestDetection:
    def test_unified_memory_suppresses_system_ram(self):
        unified = StaticProvider("apple", ProviderKind.APPLE_SILICON, total_mb=32768)
        unified.unified_memory = True
        fallback = StaticProvider("system_ram", ProviderKind.SYSTEM_RAM, total_mb=32768)

        found = detect_providers(candidates=[unified], fallback=fallback)
        assert [p.provider_id for p in found] == ["apple"]

    def test_discrete_gpu_keeps_system_ram(self):
        gpu = StaticProvider("nvidia", ProviderKind.NVIDIA)
        fallback = StaticProvider("system_ram", ProviderKind.SYSTEM_RAM)

        found = detect_providers(candidates=[gpu], fallback=fallback)
        assert [p.provider_id for p in found] == ["nvidia", "system_ram"]

    def test_detection_errors_are_isolated(self):
        class _Broken(StaticProvider):
            def detect(self):
                raise OSError("permission denied")

        fallback = StaticProvider("system_ram", ProviderKind.SYSTEM_RAM)
        found = detect_providers(candidates=[_Broken("broken")], fallback=fallback)
        assert [p.provider_id for p in found] == ["system_ram"]


class TestDistribution:
    def test_proportional_with_remainder_on_last(self):
        snapshots = [
            MemorySnapshot("a", ProviderKind.NVIDIA, "a", 3000, 0, 3000),
            MemorySnapshot("b", ProviderKind.SYSTEM_RAM, "b", 1000, 0, 1000),
        ]
        distribute_allocation(snapshots, 1001)
        assert snapshots[0].allocated_mb == 750
        assert snapshots[1].allocated_mb == 251
        assert sum(s.allocated_mb for s in snapshots) == 1001


class TestResourceAccountant:
    def test_failing_provider_is_omitted(self):
        bus = EventBus()
        accountant = ResourceAccountant(
            bus,
            [_FailingProvider("bad"), StaticProvider("good", total_mb=4096, used_mb=1024)],
            timeout_sec=1.0,
        )
        snapshots = accountant.probe()
        assert [s.provider_id for s in snapshots] == ["good"]
        assert snapshots[0].free_mb == 3072
        accountant.close()

    def test_hung_provider_does_not_block_probe(self):
        release = threading.Event()
        hanging = _HangingProvider(release, provider_id="slow")
        accountant = ResourceAccountant(
            EventBus(), [hanging, StaticProvider("fast")], timeout_sec=0.2
        )
        try:
            started = time.time()
            first = accountant.probe()
            assert time.time() - started < 2.0
            assert [s.provider_id for s in first] == ["fast"]

            # still busy: not queried again
            accountant.probe()
            assert hanging.calls == 1
        finally:
            release.set()
            accountant.close()

    def test_publish_snapshot_always_emits(self):
        bus = EventBus()
        subscription = bus.subscribe()
        accountant = ResourceAccountant(bus, [StaticProvider("gpu", total_mb=2048)])

        accountant.publish_snapshot()
        accountant.publish_snapshot()

        events = subscription.drain()
        assert [e.kind for e in events] == [EventKind.MEMORY_STATS] * 2
        assert events[0].data["total_mb"] == 2048
        accountant.close()

    def test_local_free_prefers_accelerators(self):
        accountant = ResourceAccountant(
            EventBus(),
            [
                StaticProvider("gpu", ProviderKind.NVIDIA, total_mb=8192, used_mb=2048),
                StaticProvider("ram", ProviderKind.SYSTEM_RAM, total_mb=32768, used_mb=0),
            ],
        )
        accountant.probe()
        assert accountant.local_free_mb() == 6144
        assert accountant.host_ram_free_mb() == 32768
        accountant.close()

    def test_cpu_only_host_uses_ram_as_local_pool(self):
        accountant = ResourceAccountant(
            EventBus(), [StaticProvider("ram", ProviderKind.SYSTEM_RAM, total_mb=16384)]
        )
        accountant.probe()
        assert accountant.local_free_mb() == 16384
        assert accountant.host_ram_free_mb() == 0
        accountant.close()

    def test_remote_view_tracks_device_events(self, bus):
        accountant = ResourceAccountant(bus, [StaticProvider("gpu", total_mb=4096)])
        accountant.probe()
        approved = {"id": "d1", "status": "approved", "rpc_status": "offline"}
        bus.publish(DomainEvent(EventKind.DEVICE_APPROVED, {"device_id": "d1", "device": approved}))
        bus.publish(
            DomainEvent(
                EventKind.RPC_DEVICE_READY,
                {"device_id": "d1", "memory_total_mb": 8192, "memory_free_mb": 2048},
            )
        )
        bus.publish(DomainEvent(EventKind.MEMORY_ALLOCATED, {"device_id": "d1", "memory_mb": 512}))
        assert bus.wait_idle()

        assert accountant.remote_free(["d1", "unknown"]) == {"d1": 2048}
        assert accountant.total_available(["d1"]) == 4096 + 2048
        assert accountant.allocated_total_mb() == 512

        offline = {"id": "d1", "status": "offline", "rpc_status": "offline"}
        bus.publish(DomainEvent(EventKind.DEVICE_OFFLINE, {"device_id": "d1", "device": offline}))
        assert bus.wait_idle()
        assert accountant.remote_free(["d1"]) == {}
        accountant.close()

    def test_rpc_ready_ignored_for_unapproved_device(self, bus):
        accountant = ResourceAccountant(bus, [])
        bus.publish(
            DomainEvent(EventKind.RPC_DEVICE_READY, {"device_id": "d2", "memory_free_mb": 999})
        )
        assert bus.wait_idle()
        assert accountant.remote_free(["d2"]) == {}
        accountant.close()

    def test_total_available_counts_only_usable_devices(self, bus):
        accountant = ResourceAccountant(bus, [StaticProvider("gpu", total_mb=4096, used_mb=1024)])
        accountant.probe()
        accountant.seed_devices(
            [
                {"id": "ready", "status": "approved", "rpc_status": "ready", "memory_free_mb": 2000},
                {"id": "idle", "status": "approved", "rpc_status": "offline", "memory_free_mb": 900},
                {"id": "new", "status": "pending", "rpc_status": "ready", "memory_free_mb": 800},
                {"id": "gone", "status": "offline", "rpc_status": "ready", "memory_free_mb": 700},
            ]
        )

        assert accountant.total_available(["ready", "idle", "new", "gone", "unknown"]) == 3072 + 2000
        assert accountant.total_available([]) == 3072
        accountant.close()


class TestProviderContract:
    def test_default_read_needs_used_figure(self):
        class _NoQuery(StaticProvider):
            query_used_mb = MemoryProvider.query_used_mb

        with pytest.raises(NotImplementedError):
            _NoQuery().read()
