"""
Router engine capability and its implementations.

- RouterEngine: the narrow call surface the controller drives (init/start/stop/
  graceful_shutdown/query_status plus best-effort proxy reload and log access)
- StubEngine: in-process engine with no network activity; counters stay at zero
- I2pdDaemonEngine: supervises an ``i2pd`` child process and reads its counters
  over I2PControl (JSON-RPC 2.0 over HTTPS)
"""

import contextlib
import itertools
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
import warnings
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, IO, List, Mapping, Optional

import requests  # type: ignore

from .errors import EngineError
from .workspace import WorkspaceLayout

LOGGER = logging.getLogger("i2pd_bridge.engine")


@dataclass(frozen=True)
class EngineCounters:
    known_routers: int = 0
    active_tunnels: int = 0
    participating_tunnels: int = 0
    sent_bytes: int = 0
    received_bytes: int = 0
    bandwidth_kbps: float = 0.0

    @classmethod
    def zero(cls) -> "EngineCounters":
        return cls()


class RouterEngine(ABC):
    """Opaque router engine. Failures are raised as EngineError."""

    @abstractmethod
    def init(self, layout: WorkspaceLayout) -> None:
        ...

    @abstractmethod
    def start(self, overrides: Mapping[str, str]) -> None:
        """Start routing. ``overrides`` are ``section.key -> value`` config options."""

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def graceful_shutdown(self, grace_period: float) -> None:
        """Drain in-flight work for at most ``grace_period`` seconds, then stop."""

    @abstractmethod
    def query_status(self) -> EngineCounters:
        ...

    def reload_proxy(self, kind: str, enabled: bool, port: int) -> bool:
        """Hot-apply a proxy change. Returns False when a restart is required."""
        return False

    def read_logs(self, max_lines: int = 200) -> str:
        return ""

    def clear_logs(self) -> None:
        """Discard collected log output; engines without logs have nothing to do."""


# ──────────────────────────────────────────────────────────────
# In-process stub
# ──────────────────────────────────────────────────────────────
class StubEngine(RouterEngine):
    """Engine without a network stack; useful for UI work and as a base for test doubles."""

    LOG_LIMIT = 500

    def __init__(self):
        self._lock = threading.Lock()
        self.initialized = False
        self.running = False
        self.layout: Optional[WorkspaceLayout] = None
        self.options: Dict[str, str] = {}
        self._logs: Deque[str] = deque(maxlen=self.LOG_LIMIT)

    def init(self, layout: WorkspaceLayout) -> None:
        with self._lock:
            if self.initialized:
                return
            self.layout = layout
            self.initialized = True
            self._log("i2pd initialized")

    def start(self, overrides: Mapping[str, str]) -> None:
        with self._lock:
            if not self.initialized:
                raise EngineError("engine not initialized")
            if self.running:
                return
            self.options.update(overrides)
            self.running = True
            self._log("i2pd started")

    def stop(self) -> None:
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._log("i2pd stopped")

    def graceful_shutdown(self, grace_period: float) -> None:
        # nothing in flight to drain
        self.stop()

    def query_status(self) -> EngineCounters:
        return EngineCounters.zero()

    def reload_proxy(self, kind: str, enabled: bool, port: int) -> bool:
        with self._lock:
            self.options[f"{kind}.enabled"] = "true" if enabled else "false"
            self.options[f"{kind}.port"] = str(port)
            self._log(f"{kind} {'enabled' if enabled else 'disabled'} on port {port}")
        return True

    def read_logs(self, max_lines: int = 200) -> str:
        with self._lock:
            lines = list(self._logs)
        return "\n".join(lines[-max_lines:]) if max_lines > 0 else ""

    def clear_logs(self) -> None:
        with self._lock:
            self._logs.clear()

    def _log(self, msg: str) -> None:
        self._logs.append(f"[INFO] {msg}")


# ──────────────────────────────────────────────────────────────
# I2PControl client
# ──────────────────────────────────────────────────────────────
ROUTER_INFO_KEYS = {
    "i2p.router.netdb.knownpeers": None,
    "i2p.router.net.tunnels.participating": None,
    "i2p.router.net.tunnels.inbound": None,
    "i2p.router.net.tunnels.outbound": None,
    "i2p.router.net.bw.inbound.15s": None,
    "i2p.router.net.bw.outbound.15s": None,
    "i2p.router.net.total.sent.bytes": None,
    "i2p.router.net.total.received.bytes": None,
}

TOKEN_ERRORS = (-32002, -32003, -32004)


class I2PControlClient:
    """Minimal I2PControl JSON-RPC client (API version 1)."""

    def __init__(
        self,
        address: str = "127.0.0.1",
        port: int = 7650,
        password: str = "itoopie",
        timeout: float = 3.0,
        verify: bool = False,
        session: Optional[requests.Session] = None,
    ):
        self.address = address
        self.port = port
        self.url = f"https://{address}:{port}/"
        self.password = password
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        self._token: Optional[str] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def router_info(self) -> Dict[str, Any]:
        return self._call_authenticated("RouterInfo", dict(ROUTER_INFO_KEYS))

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self.session.close()

    def _call_authenticated(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            if not self._token:
                self._authenticate()
            try:
                return self._call(method, dict(params, Token=self._token))
            except _RpcError as exc:
                if exc.code not in TOKEN_ERRORS:
                    raise EngineError(f"I2PControl {method} failed: {exc}") from exc
            # token expired or unknown: authenticate once more
            self._authenticate()
            try:
                return self._call(method, dict(params, Token=self._token))
            except _RpcError as exc:
                raise EngineError(f"I2PControl {method} failed: {exc}") from exc

    def _authenticate(self) -> None:
        self._token = None
        try:
            result = self._call("Authenticate", {"API": 1, "Password": self.password})
        except _RpcError as exc:
            raise EngineError(f"I2PControl authentication failed: {exc}") from exc
        token = result.get("Token")
        if not token:
            raise EngineError("I2PControl authentication returned no token")
        self._token = str(token)

    def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            with warnings.catch_warnings():
                # i2pd serves I2PControl with a self-signed certificate
                warnings.filterwarnings("ignore", message="Unverified HTTPS request")
                resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise EngineError(f"I2PControl {method} request failed: {exc}") from exc
        if not isinstance(body, dict):
            raise EngineError(f"I2PControl {method} returned a non-object response")
        error = body.get("error")
        if error:
            raise _RpcError(int(error.get("code", 0)), str(error.get("message", "")))
        result = body.get("result")
        return result if isinstance(result, dict) else {}


class _RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(f"{message} ({code})")
        self.code = code


def counters_from_router_info(info: Mapping[str, Any]) -> EngineCounters:
    def num(key: str) -> float:
        try:
            value = float(info.get(key) or 0)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, value)

    tunnels = num("i2p.router.net.tunnels.inbound") + num("i2p.router.net.tunnels.outbound")
    bw_bps = num("i2p.router.net.bw.inbound.15s") + num("i2p.router.net.bw.outbound.15s")
    return EngineCounters(
        known_routers=int(num("i2p.router.netdb.knownpeers")),
        active_tunnels=int(tunnels),
        participating_tunnels=int(num("i2p.router.net.tunnels.participating")),
        sent_bytes=int(num("i2p.router.net.total.sent.bytes")),
        received_bytes=int(num("i2p.router.net.total.received.bytes")),
        bandwidth_kbps=round(bw_bps / 1024.0, 2),
    )


# ──────────────────────────────────────────────────────────────
# i2pd child process
# ──────────────────────────────────────────────────────────────
class I2pdDaemonEngine(RouterEngine):
    """Runs the ``i2pd`` binary against the provisioned workspace."""

    def __init__(
        self,
        binary: str = "i2pd",
        control: Optional[I2PControlClient] = None,
        stop_timeout: float = 10.0,
    ):
        self.binary = binary
        self.control = control or I2PControlClient()
        self.stop_timeout = stop_timeout
        self.layout: Optional[WorkspaceLayout] = None
        self.process: Optional[subprocess.Popen] = None
        self.log_handle: Optional[IO[str]] = None
        self.running_since: Optional[float] = None
        self.last_exit_code: Optional[int] = None
        self._lock = threading.Lock()

    def init(self, layout: WorkspaceLayout) -> None:
        path = shutil.which(self.binary)
        if not path:
            raise EngineError(f"i2pd binary '{self.binary}' not found")
        self.binary = path
        self.layout = layout

    def build_command(self, overrides: Mapping[str, str]) -> List[str]:
        layout = self._require_layout()
        cmd = [
            self.binary,
            f"--datadir={layout.root}",
            f"--conf={layout.config_file}",
            f"--tunnelsdir={layout.tunnel_config_dir}",
            f"--certsdir={layout.certificates_dir}",
            "--i2pcontrol.enabled=true",
            f"--i2pcontrol.address={self.control.address}",
            f"--i2pcontrol.port={self.control.port}",
            f"--i2pcontrol.password={self.control.password}",
        ]
        for key in sorted(overrides):
            cmd.append(f"--{key}={overrides[key]}")
        return cmd

    def start(self, overrides: Mapping[str, str]) -> None:
        with self._lock:
            if self.process and self.process.poll() is None:
                return
            layout = self._require_layout()
            cmd = self.build_command(overrides)
            try:
                log_file = open(layout.log_file, "a", buffering=1, encoding="utf-8", errors="replace")
            except OSError as exc:
                raise EngineError(f"cannot open {layout.log_file}: {exc}") from exc
            self.log_handle = log_file
            log_file.write(f"\n[{time.strftime('%Y-%m-%d %H:%M:%S')}] bridge: started {cmd}\n")
            log_file.flush()
            try:
                self.process = subprocess.Popen(
                    cmd,
                    cwd=layout.root,
                    stdout=log_file,
                    stderr=log_file,
                    stdin=subprocess.DEVNULL,
                    text=True,
                )
            except OSError as exc:
                self._close_log()
                raise EngineError(f"failed to launch i2pd: {exc}") from exc
            self.running_since = time.time()
            LOGGER.info("i2pd started (pid %s)", self.process.pid)

    def stop(self) -> None:
        with self._lock:
            self._terminate(self.stop_timeout)

    def graceful_shutdown(self, grace_period: float) -> None:
        with self._lock:
            proc = self.process
            if not proc or proc.poll() is not None:
                self._reap()
                return
            # i2pd treats SIGINT as "stop accepting transit, exit when tunnels expire"
            with contextlib.suppress(Exception):
                proc.send_signal(signal.SIGINT)
            try:
                proc.wait(timeout=max(0.0, grace_period))
            except subprocess.TimeoutExpired:
                LOGGER.warning("i2pd did not exit within %.0fs grace period; forcing stop", grace_period)
            self._terminate(self.stop_timeout)

    def query_status(self) -> EngineCounters:
        proc = self.process
        if not proc:
            return EngineCounters.zero()
        code = proc.poll()
        if code is not None:
            raise EngineError(f"i2pd exited with code {code}")
        return counters_from_router_info(self.control.router_info())

    def read_logs(self, max_lines: int = 200) -> str:
        if not self.layout or max_lines <= 0 or not self.layout.log_file.exists():
            return ""
        try:
            with open(self.layout.log_file, "r", encoding="utf-8", errors="replace") as fh:
                tail = deque(fh, maxlen=max_lines)
        except OSError as exc:
            raise EngineError(f"cannot read {self.layout.log_file}: {exc}") from exc
        return "".join(tail).rstrip("\n")

    def clear_logs(self) -> None:
        if not self.layout or not self.layout.log_file.exists():
            return
        # the child holds the file in append mode, so later output lands at offset 0
        try:
            os.truncate(self.layout.log_file, 0)
        except OSError as exc:
            raise EngineError(f"cannot clear {self.layout.log_file}: {exc}") from exc

    # internal helpers -------------------------------------------------
    def _require_layout(self) -> WorkspaceLayout:
        if not self.layout:
            raise EngineError("engine not initialized")
        return self.layout

    def _terminate(self, timeout: float) -> None:
        proc = self.process
        if proc and proc.poll() is None:
            with contextlib.suppress(Exception):
                proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                with contextlib.suppress(Exception):
                    proc.kill()
                with contextlib.suppress(Exception):
                    proc.wait(timeout=timeout)
        if proc:
            LOGGER.info("i2pd stopped (exit code %s)", proc.poll())
        self._reap()

    def _reap(self) -> None:
        if self.process:
            self.last_exit_code = self.process.poll()
        self.process = None
        self.running_since = None
        self._close_log()

    def _close_log(self) -> None:
        handle = self.log_handle
        self.log_handle = None
        if handle:
            with contextlib.suppress(Exception):
                handle.flush()
                handle.close()

