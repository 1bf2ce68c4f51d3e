"""Background scheduling and termination handling."""

import signal
import threading

import pytest

from .controller import RouterState
from .scheduler import (
    BackgroundScheduler,
    ExecutionHost,
    LifecycleEvent,
    ManualEventSource,
    SignalEventSource,
    TimedExecutionHost,
)


class RecordingHost(ExecutionHost):
    def __init__(self):
        self.begun = []
        self.ended = []
        self.expiry = {}

    def begin_background_task(self, name, on_expiry):
        token = len(self.begun) + 1
        self.begun.append(name)
        self.expiry[token] = on_expiry
        return token

    def end_background_task(self, token):
        self.ended.append(token)

    def expire(self, token):
        self.expiry[token](token)


@pytest.fixture
def host():
    return RecordingHost()


@pytest.fixture
def running(controller, data_path):
    controller.initialize(data_path)
    controller.start()
    return controller


def wire(controller, host, timeout=2.0):
    source = ManualEventSource()
    scheduler = BackgroundScheduler(controller, host, terminate_timeout=timeout)
    scheduler.attach(source)
    return source, scheduler


def test_background_requests_extension_once(running, host):
    source, scheduler = wire(running, host)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    assert host.begun == ["i2pd-router"]
    assert scheduler.extension_active


def test_no_extension_when_not_running(controller, host):
    source, scheduler = wire(controller, host)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    assert host.begun == []
    assert not scheduler.extension_active


def test_expiry_leaves_router_running(running, host):
    source, scheduler = wire(running, host)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    host.expire(1)
    assert running.state is RouterState.RUNNING
    assert not scheduler.extension_active


def test_foreground_releases_extension(running, host):
    source, scheduler = wire(running, host)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    source.emit(LifecycleEvent.ENTERING_FOREGROUND)
    assert host.ended == [1]
    assert not scheduler.extension_active


def test_late_expiry_of_released_extension_keeps_new_one(running, host):
    source, scheduler = wire(running, host)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    source.emit(LifecycleEvent.ENTERING_FOREGROUND)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    assert host.begun == ["i2pd-router", "i2pd-router"]

    host.expire(1)
    assert scheduler.extension_active

    source.emit(LifecycleEvent.ENTERING_FOREGROUND)
    assert host.ended == [1, 2]


def test_terminate_runs_graceful_shutdown(running, engine, host):
    source, scheduler = wire(running, host)
    source.emit(LifecycleEvent.ENTERING_BACKGROUND)
    assert scheduler.about_to_terminate() is True
    assert running.state is RouterState.STOPPED
    assert "graceful_shutdown" in engine.calls
    assert host.ended == [1]


def test_terminate_event_through_source(running, host):
    source, _ = wire(running, host)
    source.emit(LifecycleEvent.ABOUT_TO_TERMINATE)
    assert running.state is RouterState.STOPPED


def test_terminate_gives_up_after_hard_timeout(running, engine, host):
    engine.graceful_gate = threading.Event()
    _, scheduler = wire(running, host, timeout=0.2)
    try:
        assert scheduler.about_to_terminate() is False
        assert running.state is RouterState.STOPPING
    finally:
        engine.graceful_gate.set()


def test_terminate_reports_engine_failure(running, engine, host):
    engine.fail_on.add("graceful_shutdown")
    _, scheduler = wire(running, host)
    assert scheduler.about_to_terminate() is False
    assert running.state is RouterState.RUNNING


def test_terminate_when_stopped_is_noop(controller, engine, host):
    _, scheduler = wire(controller, host)
    assert scheduler.about_to_terminate() is True
    assert "graceful_shutdown" not in engine.calls


def test_listener_errors_do_not_stop_dispatch():
    source = ManualEventSource()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    source.subscribe(broken)
    source.subscribe(seen.append)
    source.emit(LifecycleEvent.ENTERING_FOREGROUND)
    assert seen == [LifecycleEvent.ENTERING_FOREGROUND]


def test_timed_host_expires_and_cancels():
    host = TimedExecutionHost(allowance=0.05)
    fired = threading.Event()
    token = host.begin_background_task("t", lambda _token: fired.set())
    assert fired.wait(2.0)
    assert host.active == 0

    cancelled = threading.Event()
    token = host.begin_background_task("t", lambda _token: cancelled.set())
    host.end_background_task(token)
    assert not cancelled.wait(0.2)
    assert host.active == 0


@pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="POSIX signals only")
def test_signal_source_installs_and_restores():
    source = SignalEventSource()
    seen = []
    source.subscribe(seen.append)
    previous = signal.getsignal(signal.SIGUSR1)
    source.install()
    try:
        handler = signal.getsignal(signal.SIGUSR1)
        handler(signal.SIGUSR1, None)
        signal.getsignal(signal.SIGUSR2)(signal.SIGUSR2, None)
    finally:
        source.uninstall()
    assert seen == [LifecycleEvent.ENTERING_BACKGROUND, LifecycleEvent.ENTERING_FOREGROUND]
    assert signal.getsignal(signal.SIGUSR1) is previous
