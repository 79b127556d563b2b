"""llama.cpp process management: local RPC server and inference server."""

import os
import shlex
import shutil
import socket
import subprocess
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Deque, List, Optional

from sharedmem.common.config import LlamaCppConfig
from sharedmem.common.errors import ProcessLaunchError
from sharedmem.common.logging import get_logger
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind

log = get_logger(__name__)

RPC_SERVER_BIN = "llama-rpc-server"
INFERENCE_SERVER_BINS = ("llama-server", "llama-cli")


@dataclass
class ManagedProcess:
    """Runtime metadata for a child process owned by the host."""

    name: str
    cmd: List[str]
    process: subprocess.Popen
    started_at: float
    log_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=120))
    lock: Lock = field(default_factory=Lock, repr=False)

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def snapshot(self) -> dict:
        exit_code = self.process.poll()
        with self.lock:
            recent_logs = list(self.log_tail)[-10:]
        return {
            "name": self.name,
            "pid": self.process.pid,
            "running": exit_code is None,
            "exit_code": exit_code,
            "started_at": self.started_at,
            "cmd": " ".join(shlex.quote(token) for token in self.cmd),
            "recent_logs": recent_logs,
        }


def find_binary(name: str, bin_dir: str = "~/.sharedmem/bin") -> Optional[str]:
    """Locate ``name`` on PATH, then in the private binary directory."""
    found = shutil.which(name)
    if found:
        return found
    candidate = os.path.join(os.path.expanduser(bin_dir), name)
    if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
        return candidate
    return None


def stop_process(process: subprocess.Popen) -> None:
    """Terminate a subprocess best-effort."""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=2)


def start_log_reader(managed: ManagedProcess) -> None:
    """Stream child stdout into the managed process's tail buffer."""
    stdout = managed.process.stdout
    if stdout is None:
        return

    def _reader() -> None:
        for raw_line in stdout:
            line = raw_line.strip()
            if not line:
                continue
            with managed.lock:
                managed.log_tail.append(line)

    thread = threading.Thread(
        target=_reader,
        daemon=True,
        name=f"{managed.name}-stdout-reader",
    )
    thread.start()


def probe_tcp(address: str, port: int, timeout: float = 2.0) -> bool:
    """True if something accepts TCP connections on ``address:port``."""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


class LlamaCppManager:
    """Owns the local ``llama-rpc-server`` and ``llama-server`` processes."""

    def __init__(self, config: LlamaCppConfig, bus: EventBus):
        self.config = config
        self.bus = bus
        self._lock = threading.RLock()
        self._rpc: Optional[ManagedProcess] = None
        self._inference: Optional[ManagedProcess] = None
        # Session allowed to launch or replace the inference server
        self._owner: Optional[str] = None

    # -- binaries ----------------------------------------------------------

    def rpc_server_binary(self) -> Optional[str]:
        return find_binary(RPC_SERVER_BIN, self.config.bin_dir)

    def inference_server_binary(self) -> Optional[str]:
        for name in INFERENCE_SERVER_BINS:
            found = find_binary(name, self.config.bin_dir)
            if found:
                return found
        return None

    def _spawn(self, name: str, cmd: List[str]) -> ManagedProcess:
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise ProcessLaunchError(f"Failed to launch {name}: {e}") from e
        managed = ManagedProcess(name=name, cmd=cmd, process=process, started_at=time.time())
        start_log_reader(managed)
        return managed

    # -- local RPC server --------------------------------------------------

    def start_rpc_server(self) -> bool:
        """Start the local RPC server. Returns False if it was already running."""
        with self._lock:
            if self._rpc is not None and self._rpc.running:
                log.debug("llama-rpc-server already running")
                return False
            binary = self.rpc_server_binary()
            if binary is None:
                raise ProcessLaunchError(
                    f"{RPC_SERVER_BIN} not found. Install llama.cpp and add it to "
                    f"your PATH, or place it in {self.config.bin_dir}"
                )
            cmd = [binary, "--host", "0.0.0.0", "--port", str(self.config.rpc_port)]
            log.info(f"Starting llama-rpc-server on port {self.config.rpc_port}")
            self._rpc = self._spawn("llama-rpc-server", cmd)

        self.bus.publish(DomainEvent(EventKind.RPC_SERVER_READY, {"port": self.config.rpc_port}))
        return True

    def stop_rpc_server(self) -> bool:
        with self._lock:
            managed, self._rpc = self._rpc, None
        if managed is None:
            return False
        stop_process(managed.process)
        log.info("llama-rpc-server stopped")
        self.bus.publish(DomainEvent(EventKind.RPC_SERVER_OFFLINE, {"port": self.config.rpc_port}))
        return True

    def is_rpc_running(self) -> bool:
        with self._lock:
            return self._rpc is not None and self._rpc.running

    # -- inference server --------------------------------------------------

    def build_inference_command(
        self,
        binary: str,
        model_path: str,
        rpc_endpoints: List[str],
        ctx_size: int,
        gpu_layers: int,
    ) -> List[str]:
        cmd = [
            binary,
            "-m", model_path,
            "--port", str(self.config.inference_port),
            "--host", "0.0.0.0",
            "--ctx-size", str(ctx_size),
        ]
        if gpu_layers >= 0:
            cmd += ["-ngl", str(gpu_layers)]
        else:
            cmd += ["-ngl", "999"]
        if rpc_endpoints:
            cmd += ["--rpc", ",".join(rpc_endpoints)]
        return cmd

    def reserve_inference(self, owner: str) -> None:
        """Hand the inference server to ``owner``.

        Later launches and stops carrying a different owner are refused, so
        a start that was overtaken never replaces the current process.
        """
        with self._lock:
            self._owner = owner

    def start_inference(
        self,
        model_path: str,
        rpc_endpoints: List[str],
        ctx_size: int,
        gpu_layers: int = -1,
        owner: Optional[str] = None,
    ) -> Optional[ManagedProcess]:
        """Launch ``llama-server`` sharded over ``rpc_endpoints``.

        Returns None without touching the running server when ``owner`` no
        longer holds the reservation.
        """
        binary = self.inference_server_binary()
        if binary is None:
            raise ProcessLaunchError(
                "llama-server not found. Install llama.cpp and add it to your "
                f"PATH, or place it in {self.config.bin_dir}"
            )
        cmd = self.build_inference_command(binary, model_path, rpc_endpoints, ctx_size, gpu_layers)
        with self._lock:
            if owner is not None and owner != self._owner:
                log.info(f"Skipping llama-server launch for superseded session {owner}")
                return None
            if self._inference is not None and self._inference.running:
                stop_process(self._inference.process)
            log.info(
                f"[bold blue]Starting llama-server[/]: model={model_path} "
                f"rpc=[{','.join(rpc_endpoints)}] port={self.config.inference_port}"
            )
            self._inference = self._spawn("llama-server", cmd)
            return self._inference

    def stop_inference(self, owner: Optional[str] = None) -> bool:
        """Stop the inference server. Idempotent.

        With ``owner`` set, only stops the server when that owner still
        holds the reservation, and releases it.
        """
        with self._lock:
            if owner is not None:
                if owner != self._owner:
                    return False
                self._owner = None
            managed, self._inference = self._inference, None
        if managed is None:
            return False
        stop_process(managed.process)
        log.info("llama-server stopped")
        return True

    def is_inference_running(self) -> bool:
        with self._lock:
            return self._inference is not None and self._inference.running

    def inference_exit_code(self) -> Optional[int]:
        with self._lock:
            if self._inference is None:
                return None
            return self._inference.process.poll()

    def inference_base_url(self) -> str:
        return f"http://127.0.0.1:{self.config.inference_port}"

    def inference_is_healthy(self, timeout: float = 3.0) -> bool:
        try:
            with urllib.request.urlopen(f"{self.inference_base_url()}/health", timeout=timeout) as response:
                return 200 <= response.status < 300
        except (urllib.error.URLError, OSError):
            return False

    def wait_inference_ready(self, timeout: float, cancel: threading.Event) -> bool:
        """Poll ``/health`` until ready, exit, cancellation or timeout."""
        deadline = time.time() + timeout
        while time.time() < deadline and not cancel.is_set():
            if not self.is_inference_running():
                return False
            if self.inference_is_healthy():
                return True
            cancel.wait(0.5)
        return False

    def probe_rpc_endpoint(self, address: str, port: int, timeout: float = 2.0) -> bool:
        return probe_tcp(address, port, timeout)

    def status(self) -> dict:
        with self._lock:
            rpc = self._rpc.snapshot() if self._rpc else None
            inference = self._inference.snapshot() if self._inference else None
        return {
            "rpc_server_running": bool(rpc and rpc["running"]),
            "inference_running": bool(inference and inference["running"]),
            "rpc_server_bin": self.rpc_server_binary() is not None,
            "inference_server_bin": self.inference_server_binary() is not None,
            "rpc_port": self.config.rpc_port,
            "inference_port": self.config.inference_port,
            "rpc_process": rpc,
            "inference_process": inference,
        }

    def shutdown(self) -> None:
        self.stop_inference()
        self.stop_rpc_server()
