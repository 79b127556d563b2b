"""Watchdog for the model runtime helper service (Ollama-compatible).

The supervisor owns one child process at most. If a healthy service is
already listening on the configured host it is adopted as unmanaged and
only its health is tracked. A managed child that exits or stops
answering is restarted with exponential backoff. Every status change is
recorded in a single ``RuntimeStatusCell`` which publishes
``runtime_status`` on the bus.
"""

import os
import subprocess
import threading
import time
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass
from typing import Optional
from urllib.parse import urlparse

from sharedmem.common.config import RuntimeConfig
from sharedmem.common.logging import get_logger
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind
from sharedmem.runtime.llama_cpp import find_binary, stop_process

log = get_logger(__name__)


@dataclass
class RuntimeStatus:
    running: bool = False
    managed: bool = False
    pid: Optional[int] = None
    restarts: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RuntimeStatusCell:
    """Single owned cell for the runtime service status."""

    def __init__(self, bus: EventBus, host: str):
        self.bus = bus
        self.host = host
        self._lock = threading.Lock()
        self._status = RuntimeStatus()

    def get(self) -> RuntimeStatus:
        with self._lock:
            return RuntimeStatus(**asdict(self._status))

    def update(self, **changes) -> bool:
        """Apply ``changes``; publish ``runtime_status`` if anything differed."""
        with self._lock:
            current = asdict(self._status)
            merged = {**current, **changes}
            if merged == current:
                return False
            self._status = RuntimeStatus(**merged)
            payload = {"host": self.host, **merged}
        self.bus.publish(DomainEvent(EventKind.RUNTIME_STATUS, payload))
        return True


def runtime_is_healthy(host: str, timeout: float = 3.0) -> bool:
    try:
        with urllib.request.urlopen(f"{host.rstrip('/')}/api/tags", timeout=timeout) as response:
            return 200 <= response.status < 300
    except (urllib.error.URLError, OSError):
        return False


class RuntimeSupervisor:
    """Starts, watches and restarts the runtime helper service."""

    def __init__(self, config: RuntimeConfig, bus: EventBus):
        self.config = config
        self.cell = RuntimeStatusCell(bus, config.host)

        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._backoff = config.backoff_initial_sec

    # -- public ------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._watch_loop,
            daemon=True,
            name="runtime-watchdog",
        )
        self._thread.start()
        log.info(f"Runtime watchdog started for {self.config.host}")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        with self._lock:
            process, self._process = self._process, None
        if process is not None:
            stop_process(process)
        self.cell.update(running=False, pid=None)
        log.info("Runtime watchdog stopped")

    def status(self) -> dict:
        return {"host": self.config.host, **self.cell.get().to_dict()}

    # -- supervision -------------------------------------------------------

    def is_healthy(self) -> bool:
        return runtime_is_healthy(self.config.host, self.config.health_timeout_sec)

    def _child_alive(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def _launch(self) -> bool:
        """Start ``<binary> serve`` and wait for it to answer health checks."""
        binary = find_binary(self.config.binary) or self.config.binary
        env = dict(os.environ)
        parsed = urlparse(self.config.host)
        if parsed.netloc:
            env["OLLAMA_HOST"] = parsed.netloc
        try:
            process = subprocess.Popen(
                [binary, "serve"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=env,
            )
        except OSError as e:
            log.error(f"[bold red]Failed to launch runtime service:[/] {e}")
            self.cell.update(running=False, managed=False, pid=None, last_error=str(e))
            return False

        with self._lock:
            self._process = process
        log.info(f"[bold blue]Started runtime service[/] ({binary} serve, pid {process.pid})")

        deadline = time.time() + self.config.startup_timeout_sec
        while time.time() < deadline and not self._stop_event.is_set():
            if process.poll() is not None:
                break
            if self.is_healthy():
                self.cell.update(running=True, managed=True, pid=process.pid, last_error=None)
                return True
            self._stop_event.wait(0.5)

        message = (
            f"runtime service exited with code {process.returncode}"
            if process.poll() is not None
            else f"runtime service not healthy after {self.config.startup_timeout_sec}s"
        )
        log.warning(message)
        stop_process(process)
        with self._lock:
            if self._process is process:
                self._process = None
        self.cell.update(running=False, pid=None, last_error=message)
        return False

    def check_once(self) -> None:
        """One supervision step: adopt, launch or restart as needed."""
        managed = self.cell.get().managed
        if managed and self._child_alive():
            if self.is_healthy():
                self._backoff = self.config.backoff_initial_sec
                self.cell.update(running=True)
                return
            log.warning("Runtime service stopped answering health checks, restarting")
            with self._lock:
                process, self._process = self._process, None
            if process is not None:
                stop_process(process)
            self._restart()
            return

        if managed:
            log.warning("[bold red]Runtime service exited unexpectedly[/]")
            self.cell.update(running=False, pid=None, last_error="process exited")
            self._restart()
            return

        if self.is_healthy():
            self.cell.update(running=True, managed=False, pid=None, last_error=None)
            return

        if not self._launch():
            self._wait_backoff()

    def _restart(self) -> None:
        self._wait_backoff()
        if self._stop_event.is_set():
            return
        if self._launch():
            status = self.cell.get()
            self.cell.update(restarts=status.restarts + 1)
        else:
            self.cell.update(managed=False)

    def _wait_backoff(self) -> None:
        delay = self._backoff
        self._backoff = min(self._backoff * 2, self.config.backoff_max_sec)
        log.debug(f"Runtime watchdog backing off {delay:.1f}s")
        self._stop_event.wait(delay)

    def _watch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_once()
            except Exception:
                log.exception("Runtime watchdog iteration failed")
            self._stop_event.wait(self.config.health_interval_sec)
