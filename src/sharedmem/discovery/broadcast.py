"""Local network discovery over UDP broadcast beacons.

Each host periodically broadcasts a small JSON beacon and listens for
beacons from peers. A valid beacon from a non-local address is published
as ``device_discovered``; turning that into a registry entry is the
orchestrator's job.
"""

import json
import platform
import socket
import threading
from typing import Optional, Set

import psutil

from sharedmem.common.config import DiscoveryConfig
from sharedmem.common.logging import get_logger
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind

log = get_logger(__name__)

BEACON_VERSION = 1
MAX_BEACON_BYTES = 2048


def build_beacon(
    service: str,
    name: str,
    api_port: int,
    rpc_port: int,
    hostname: Optional[str] = None,
) -> bytes:
    payload = {
        "service": service,
        "version": BEACON_VERSION,
        "name": name,
        "hostname": hostname or socket.gethostname(),
        "platform": platform.system().lower(),
        "api_port": api_port,
        "rpc_port": rpc_port,
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def parse_beacon(data: bytes, service: str) -> Optional[dict]:
    """Decode a beacon; None for anything malformed or for another service."""
    if len(data) > MAX_BEACON_BYTES:
        return None
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict) or payload.get("service") != service:
        return None

    rpc_port = payload.get("rpc_port")
    if not isinstance(rpc_port, int) or isinstance(rpc_port, bool) or not 0 < rpc_port < 65536:
        rpc_port = None
    return {
        "name": str(payload.get("name") or "")[:128] or None,
        "hostname": str(payload.get("hostname") or "")[:253] or None,
        "platform": str(payload.get("platform") or "")[:32] or None,
        "rpc_port": rpc_port,
    }


def local_addresses() -> Set[str]:
    """Every address bound to a local interface."""
    addresses = {"127.0.0.1", "::1"}
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family in (socket.AF_INET, socket.AF_INET6) and addr.address:
                addresses.add(addr.address.split("%", 1)[0])
    return addresses


class BroadcastDiscovery:
    """Announces this host and listens for peer beacons."""

    def __init__(
        self,
        config: DiscoveryConfig,
        bus: EventBus,
        api_port: int,
        rpc_port: int,
        name: Optional[str] = None,
    ):
        self.config = config
        self.bus = bus
        self.api_port = api_port
        self.rpc_port = rpc_port
        self.name = name or socket.gethostname()

        self._stop_event = threading.Event()
        self._threads: list = []
        self._sock: Optional[socket.socket] = None
        self._local = local_addresses()

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        try:
            self._sock = self._open_socket()
        except OSError as e:
            log.warning(f"Discovery disabled, cannot bind UDP port {self.config.port}: {e}")
            return
        for target, name in (
            (self._listen_loop, "discovery-listener"),
            (self._announce_loop, "discovery-announcer"),
        ):
            thread = threading.Thread(target=target, daemon=True, name=name)
            thread.start()
            self._threads.append(thread)
        log.info(f"Discovery listening on UDP {self.config.port}")

    def stop(self) -> None:
        self._stop_event.set()
        if self._sock is not None:
            self._sock.close()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
        self._sock = None

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.settimeout(1.0)
        sock.bind(("", self.config.port))
        return sock

    def announce(self) -> None:
        if self._sock is None:
            return
        beacon = build_beacon(self.config.service_name, self.name, self.api_port, self.rpc_port)
        try:
            self._sock.sendto(beacon, ("<broadcast>", self.config.port))
        except OSError as e:
            log.debug(f"Beacon send failed: {e}")

    def handle_datagram(self, data: bytes, address: str) -> Optional[DomainEvent]:
        """Publish ``device_discovered`` for a valid beacon from a peer."""
        if address in self._local:
            return None
        beacon = parse_beacon(data, self.config.service_name)
        if beacon is None:
            log.debug(f"Ignored malformed datagram from {address}")
            return None
        return self.bus.publish(
            DomainEvent(EventKind.DEVICE_DISCOVERED, {"address": address, **beacon})
        )

    def _announce_loop(self) -> None:
        while not self._stop_event.is_set():
            self.announce()
            self._stop_event.wait(self.config.announce_interval_sec)

    def _listen_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                data, (address, _port) = self._sock.recvfrom(MAX_BEACON_BYTES + 1)
            except socket.timeout:
                continue
            except OSError:
                if not self._stop_event.is_set():
                    log.exception("Discovery socket failed")
                return
            self.handle_datagram(data, address)
