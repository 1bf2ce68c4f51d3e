"""Shared fixtures: a scriptable engine double and a hand-driven clock."""

import threading
from typing import List, Mapping, Optional

import pytest

from .controller import RouterController
from .engine import EngineCounters, StubEngine
from .errors import EngineError


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine(StubEngine):
    """StubEngine that records calls, reports canned counters and can fail on demand."""

    def __init__(self, counters: Optional[EngineCounters] = None):
        super().__init__()
        self.counters = counters or EngineCounters(
            known_routers=2500,
            active_tunnels=12,
            participating_tunnels=7,
            sent_bytes=150000,
            received_bytes=320000,
            bandwidth_kbps=42.5,
        )
        self.calls: List[str] = []
        self.fail_on: set = set()
        self.hot_reload = True
        self.last_overrides: Mapping[str, str] = {}
        self.graceful_gate: Optional[threading.Event] = None

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise EngineError(f"{name} failed")

    def init(self, layout):
        self._maybe_fail("init")
        super().init(layout)

    def start(self, overrides):
        self._maybe_fail("start")
        self.last_overrides = dict(overrides)
        super().start(overrides)

    def stop(self):
        self._maybe_fail("stop")
        super().stop()

    def graceful_shutdown(self, grace_period):
        self._maybe_fail("graceful_shutdown")
        if self.graceful_gate is not None:
            self.graceful_gate.wait(grace_period)
        super().graceful_shutdown(grace_period)

    def query_status(self):
        self._maybe_fail("query_status")
        return self.counters if self.running else EngineCounters.zero()

    def reload_proxy(self, kind, enabled, port):
        self._maybe_fail("reload_proxy")
        if not self.hot_reload:
            return False
        return super().reload_proxy(kind, enabled, port)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def controller(engine, clock):
    return RouterController(engine, certificates_bundle=None, grace_period=5.0, clock=clock)


@pytest.fixture
def data_path(tmp_path):
    return tmp_path / "i2pd"
