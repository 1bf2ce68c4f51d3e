"""
Router lifecycle controller.

Owns the engine state machine:

    UNINITIALIZED --initialize--> INITIALIZED --start--> RUNNING
    RUNNING --stop--> STOPPED --start--> RUNNING
    RUNNING --graceful_shutdown--> STOPPING --> STOPPED

Transitions are serialized by one lock that is held across the engine call.
State, start timestamp, proxy settings and engine options live behind a
second, short-lived lock so status readers never wait for a transition to finish.
"""

import enum
import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .engine import RouterEngine
from .errors import EngineError, InvalidArgumentError, NotInitializedError
from .workspace import WorkspaceLayout, ensure_workspace

LOGGER = logging.getLogger("i2pd_bridge.controller")

HTTP_PROXY = "httpproxy"
SOCKS_PROXY = "socksproxy"
DEFAULT_GRACE_PERIOD = 60.0

OPTION_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)?$")
# set by the bridge itself on every launch
RESERVED_OPTION_KEYS = frozenset({"datadir", "conf", "tunnelsdir", "certsdir"})
RESERVED_OPTION_SECTIONS = frozenset({HTTP_PROXY, SOCKS_PROXY, "i2pcontrol"})


class RouterState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ProxySettings:
    enabled: bool
    port: int

    def __post_init__(self):
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise InvalidArgumentError(f"port must be an integer, got {self.port!r}")
        if not 1 <= self.port <= 65535:
            raise InvalidArgumentError(f"port {self.port} outside 1-65535")

    def as_dict(self) -> dict:
        return {"enabled": self.enabled, "port": self.port}


@dataclass(frozen=True)
class ProxyConfig:
    http: ProxySettings = ProxySettings(enabled=True, port=4444)
    socks: ProxySettings = ProxySettings(enabled=True, port=4447)

    def engine_overrides(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for section, settings in ((HTTP_PROXY, self.http), (SOCKS_PROXY, self.socks)):
            out[f"{section}.enabled"] = "true" if settings.enabled else "false"
            out[f"{section}.port"] = str(settings.port)
        return out

    def as_dict(self) -> dict:
        return {"http": self.http.as_dict(), "socks": self.socks.as_dict()}


@dataclass(frozen=True)
class ControllerSnapshot:
    state: RouterState
    started_at: Optional[float]


class RouterController:
    def __init__(
        self,
        engine: RouterEngine,
        certificates_bundle: Optional[Union[str, Path]] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.certificates_bundle = certificates_bundle
        self.grace_period = grace_period
        self.clock = clock
        self._transition_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._state = RouterState.UNINITIALIZED
        self._started_at: Optional[float] = None
        self._proxy = ProxyConfig()
        self._options: Dict[str, str] = {}
        self._layout: Optional[WorkspaceLayout] = None

    # read side ---------------------------------------------------------
    @property
    def state(self) -> RouterState:
        with self._state_lock:
            return self._state

    @property
    def layout(self) -> Optional[WorkspaceLayout]:
        with self._state_lock:
            return self._layout

    @property
    def proxy_config(self) -> ProxyConfig:
        with self._state_lock:
            return self._proxy

    def snapshot(self) -> ControllerSnapshot:
        with self._state_lock:
            return ControllerSnapshot(self._state, self._started_at)

    # transitions -------------------------------------------------------
    def initialize(self, data_path: Union[str, Path]) -> bool:
        with self._transition_lock:
            state = self.state
            if state is not RouterState.UNINITIALIZED:
                current = self.layout
                if current and current.root != WorkspaceLayout.for_root(data_path).root:
                    LOGGER.warning(
                        "initialize(%s) ignored; already initialized at %s", data_path, current.root
                    )
                else:
                    LOGGER.debug("initialize ignored in state %s", state.value)
                return True
            layout = ensure_workspace(data_path, self.certificates_bundle)
            self.engine.init(layout)
            with self._state_lock:
                self._layout = layout
                self._state = RouterState.INITIALIZED
            LOGGER.info("Router initialized at %s", layout.root)
            return True

    def start(self) -> bool:
        with self._transition_lock:
            state = self.state
            if state is RouterState.RUNNING:
                LOGGER.debug("start ignored; already running")
                return True
            if state is RouterState.UNINITIALIZED:
                raise NotInitializedError("initialize must be called before start")
            self.engine.start(self.engine_overrides())
            with self._state_lock:
                self._started_at = self.clock()
                self._state = RouterState.RUNNING
            LOGGER.info("Router started")
            return True

    def stop(self) -> None:
        with self._transition_lock:
            state = self.state
            if state is not RouterState.RUNNING:
                LOGGER.debug("stop ignored in state %s", state.value)
                return
            self.engine.stop()
            self._mark_stopped()
            LOGGER.info("Router stopped")

    def graceful_shutdown(self) -> None:
        with self._transition_lock:
            state = self.state
            if state is not RouterState.RUNNING:
                LOGGER.debug("graceful shutdown ignored in state %s", state.value)
                return
            with self._state_lock:
                self._state = RouterState.STOPPING
            LOGGER.info("Graceful shutdown (grace period %.0fs)", self.grace_period)
            try:
                self.engine.graceful_shutdown(self.grace_period)
            except Exception:
                with self._state_lock:
                    self._state = RouterState.RUNNING
                raise
            self._mark_stopped()
            LOGGER.info("Router stopped after graceful shutdown")

    def configure_http_proxy(self, enabled: bool, port: int) -> None:
        self._configure_proxy(HTTP_PROXY, enabled, port)

    def configure_socks_proxy(self, enabled: bool, port: int) -> None:
        self._configure_proxy(SOCKS_PROXY, enabled, port)

    def engine_overrides(self) -> Dict[str, str]:
        """Options handed to the engine on start: stored options plus proxy settings."""
        with self._state_lock:
            out = dict(self._options)
            out.update(self._proxy.engine_overrides())
        return out

    def get_option(self, key: str) -> str:
        return self.engine_overrides().get(key, "")

    def set_option(self, key: str, value: str) -> None:
        _validate_option(key, value)
        with self._transition_lock:
            with self._state_lock:
                self._options[key] = value
                running = self._state is RouterState.RUNNING
        LOGGER.info("Option %s = %r%s", key, value, " (takes effect on next start)" if running else "")

    # internal helpers -------------------------------------------------
    def _configure_proxy(self, section: str, enabled: bool, port: int) -> None:
        settings = ProxySettings(enabled=bool(enabled), port=port)
        with self._transition_lock:
            with self._state_lock:
                current = self._proxy
                if section == HTTP_PROXY:
                    self._proxy = ProxyConfig(http=settings, socks=current.socks)
                else:
                    self._proxy = ProxyConfig(http=current.http, socks=settings)
                running = self._state is RouterState.RUNNING
            applied = running and self._hot_apply(section, settings)
            LOGGER.info(
                "%s %s on port %d (%s)",
                section,
                "enabled" if settings.enabled else "disabled",
                settings.port,
                "applied" if applied else "takes effect on next start",
            )

    def _hot_apply(self, section: str, settings: ProxySettings) -> bool:
        try:
            return self.engine.reload_proxy(section, settings.enabled, settings.port)
        except EngineError as exc:
            LOGGER.warning("Hot reload of %s failed: %s", section, exc)
            return False

    def _mark_stopped(self) -> None:
        with self._state_lock:
            self._started_at = None
            self._state = RouterState.STOPPED


def _validate_option(key: str, value: str) -> None:
    if not isinstance(key, str) or not OPTION_KEY_RE.match(key):
        raise InvalidArgumentError(f"option key must look like 'key' or 'section.key', got {key!r}")
    if not isinstance(value, str) or "\n" in value or "\r" in value:
        raise InvalidArgumentError(f"option {key} needs a single-line string value")
    section = key.split(".", 1)[0] if "." in key else None
    if key in RESERVED_OPTION_KEYS or section in RESERVED_OPTION_SECTIONS:
        raise InvalidArgumentError(f"option {key} is managed by the bridge")
