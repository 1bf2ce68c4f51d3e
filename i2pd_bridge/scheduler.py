"""
Background execution scheduling.

The scheduler listens to host lifecycle events:

- entering background: ask the host for a time-limited execution extension
  so a running router keeps going; expiry only ends the extension
- entering foreground: hand back any outstanding extension
- about to terminate: run the graceful shutdown and hold the host until it
  returns or the hard timeout elapses
"""

import enum
import itertools
import logging
import signal
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from .controller import RouterController, RouterState

LOGGER = logging.getLogger("i2pd_bridge.scheduler")

DEFAULT_TERMINATE_TIMEOUT = 30.0
DEFAULT_BACKGROUND_ALLOWANCE = 30.0
TASK_NAME = "i2pd-router"


class LifecycleEvent(enum.Enum):
    ENTERING_BACKGROUND = "entering_background"
    ENTERING_FOREGROUND = "entering_foreground"
    ABOUT_TO_TERMINATE = "about_to_terminate"


Listener = Callable[[LifecycleEvent], None]


# ──────────────────────────────────────────────────────────────
# Event sources
# ──────────────────────────────────────────────────────────────
class LifecycleEventSource:
    """Fan-out of host lifecycle events to subscribers, in subscription order."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def dispatch(self, event: LifecycleEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        LOGGER.debug("Lifecycle event %s", event.value)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Lifecycle listener failed on %s", event.value)


class ManualEventSource(LifecycleEventSource):
    """Source driven by the embedding application calling ``emit``."""

    def emit(self, event: LifecycleEvent) -> None:
        self.dispatch(event)


class SignalEventSource(LifecycleEventSource):
    """POSIX signals as lifecycle events. Must be installed from the main thread."""

    SIGNALS = {
        "SIGUSR1": LifecycleEvent.ENTERING_BACKGROUND,
        "SIGUSR2": LifecycleEvent.ENTERING_FOREGROUND,
        "SIGTERM": LifecycleEvent.ABOUT_TO_TERMINATE,
        "SIGINT": LifecycleEvent.ABOUT_TO_TERMINATE,
    }

    def __init__(self):
        super().__init__()
        self._previous: Dict[int, object] = {}

    def install(self) -> None:
        for name, event in self.SIGNALS.items():
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            self._previous[signum] = signal.signal(signum, self._make_handler(event))

    def uninstall(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _make_handler(self, event: LifecycleEvent):
        def _handler(signum, frame):
            self.dispatch(event)

        return _handler


# ──────────────────────────────────────────────────────────────
# Execution hosts
# ──────────────────────────────────────────────────────────────
class ExecutionHost(ABC):
    @abstractmethod
    def begin_background_task(self, name: str, on_expiry: Callable[[int], None]) -> int:
        """Request extra execution time; ``on_expiry(token)`` fires when the host reclaims it."""

    @abstractmethod
    def end_background_task(self, token: int) -> None:
        ...


class TimedExecutionHost(ExecutionHost):
    """Grants a fixed allowance per request, tracked with ``threading.Timer``."""

    def __init__(self, allowance: float = DEFAULT_BACKGROUND_ALLOWANCE):
        self.allowance = allowance
        self._timers: Dict[int, threading.Timer] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def begin_background_task(self, name: str, on_expiry: Callable[[int], None]) -> int:
        token = next(self._ids)

        def _expire():
            with self._lock:
                if self._timers.pop(token, None) is None:
                    return
            LOGGER.info("Background allowance for %s expired after %.0fs", name, self.allowance)
            on_expiry(token)

        timer = threading.Timer(self.allowance, _expire)
        timer.daemon = True
        with self._lock:
            self._timers[token] = timer
        timer.start()
        return token

    def end_background_task(self, token: int) -> None:
        with self._lock:
            timer = self._timers.pop(token, None)
        if timer:
            timer.cancel()

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._timers)


# ──────────────────────────────────────────────────────────────
# Scheduler
# ──────────────────────────────────────────────────────────────
class BackgroundScheduler:
    def __init__(
        self,
        controller: RouterController,
        host: ExecutionHost,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
    ):
        self.controller = controller
        self.host = host
        self.terminate_timeout = terminate_timeout
        self._token: Optional[int] = None
        self._lock = threading.Lock()

    def attach(self, source: LifecycleEventSource) -> None:
        source.subscribe(self.on_event)

    def on_event(self, event: LifecycleEvent) -> None:
        if event is LifecycleEvent.ENTERING_BACKGROUND:
            self.entering_background()
        elif event is LifecycleEvent.ENTERING_FOREGROUND:
            self._end_extension()
        elif event is LifecycleEvent.ABOUT_TO_TERMINATE:
            self.about_to_terminate()

    @property
    def extension_active(self) -> bool:
        with self._lock:
            return self._token is not None

    def entering_background(self) -> bool:
        if self.controller.state is not RouterState.RUNNING:
            LOGGER.debug("Entering background with router %s; no extension requested",
                         self.controller.state.value)
            return False
        with self._lock:
            if self._token is not None:
                return True
            self._token = self.host.begin_background_task(TASK_NAME, self._on_expiry)
        LOGGER.info("Requested background execution extension")
        return True

    def about_to_terminate(self) -> bool:
        """Run the graceful shutdown; False when it did not finish within the timeout."""
        self._end_extension()
        errors: List[BaseException] = []

        def _shutdown():
            try:
                self.controller.graceful_shutdown()
            except Exception as exc:
                errors.append(exc)

        worker = threading.Thread(target=_shutdown, name="i2pd-shutdown", daemon=True)
        worker.start()
        worker.join(timeout=self.terminate_timeout)
        if worker.is_alive():
            LOGGER.warning("Graceful shutdown still running after %.0fs; releasing host",
                           self.terminate_timeout)
            return False
        if errors:
            LOGGER.error("Graceful shutdown failed: %s", errors[0])
            return False
        return True

    def _on_expiry(self, token: int) -> None:
        # the router keeps its state; the host may suspend the process from here on
        with self._lock:
            if self._token != token:
                LOGGER.debug("Ignoring expiry of released extension %s", token)
                return
            self._token = None
        LOGGER.warning("Background execution extension expired with router %s",
                       self.controller.state.value)

    def _end_extension(self) -> None:
        with self._lock:
            token, self._token = self._token, None
        if token is not None:
            self.host.end_background_task(token)
            LOGGER.info("Background execution extension released")
