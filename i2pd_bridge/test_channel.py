"""Command channel: dispatch, argument validation and the JSON-lines transport."""

import io
import json

import pytest

from .channel import CommandChannel, serve_lines
from .controller import RouterState
from .errors import InvalidArgumentError, NotInitializedError, UnsupportedOperationError


@pytest.fixture
def channel(controller):
    return CommandChannel(controller)


def test_end_to_end_scenario(channel, controller, clock, tmp_path):
    root = tmp_path / "i2pd-test"
    assert channel.call("initialize", {"dataPath": str(root)}) is True
    for name in ("certificates", "tunnel-config", "address-book", "network-database"):
        assert (root / name).is_dir()
    assert "bandwidth = L" in (root / "i2pd.conf").read_text()

    assert channel.call("start") is True
    assert controller.state is RouterState.RUNNING

    uptimes = []
    for _ in range(3):
        clock.advance(1.0)
        info = channel.call("getRouterInfo")
        assert info["status"] == "ok"
        uptimes.append(info["uptimeSeconds"])
    assert uptimes == sorted(uptimes) and uptimes[0] < uptimes[-1]

    assert channel.call("gracefulShutdown") is None
    assert controller.state is RouterState.STOPPED
    info = channel.call("getRouterInfo")
    assert info["status"] == "stopped" and info["uptimeSeconds"] == 0


def test_unknown_method(channel):
    with pytest.raises(UnsupportedOperationError):
        channel.call("rebootUniverse")


@pytest.mark.parametrize(
    "method, arguments",
    [
        ("initialize", {}),
        ("initialize", {"dataPath": 42}),
        ("initialize", {"dataPath": "   "}),
        ("configureHttpProxy", {"enabled": True}),
        ("configureHttpProxy", {"port": 4444}),
        ("configureHttpProxy", {"enabled": "yes", "port": 4444}),
        ("configureHttpProxy", {"enabled": True, "port": 0}),
        ("configureSocksProxy", {"enabled": True, "port": 65536}),
        ("configureSocksProxy", {"enabled": True, "port": "4447"}),
        ("configureSocksProxy", {"enabled": 1, "port": 4447}),
        ("configureSocksProxy", {"enabled": False, "port": True}),
        ("getLogs", {"maxLines": -1}),
        ("getConfig", {}),
        ("setConfig", {"key": "bandwidth"}),
        ("setConfig", {"key": "bandwidth", "value": 5}),
        ("setConfig", {"key": "bad key", "value": "X"}),
        ("setConfig", {"key": "httpproxy.port", "value": "8118"}),
        ("setConfig", {"key": "datadir", "value": "/tmp"}),
        ("setConfig", {"key": "notransit", "value": "true\nfloodfill = true"}),
    ],
)
def test_malformed_arguments(channel, controller, method, arguments):
    before = controller.proxy_config
    with pytest.raises(InvalidArgumentError):
        channel.call(method, arguments)
    assert controller.proxy_config == before
    assert controller.engine_overrides() == before.engine_overrides()
    assert controller.state is RouterState.UNINITIALIZED


def test_arguments_must_be_an_object(channel):
    with pytest.raises(InvalidArgumentError):
        channel.call("start", ["not", "a", "dict"])


def test_start_before_initialize_is_structured_error(channel):
    response = channel.handle({"id": 7, "method": "start"})
    assert response == {
        "id": 7,
        "ok": False,
        "error": {"code": "NOT_INITIALIZED", "message": "initialize must be called before start"},
    }


def test_void_operations_return_null(channel, data_path):
    channel.call("initialize", {"dataPath": str(data_path)})
    assert channel.handle({"id": 1, "method": "stop"}) == {"id": 1, "ok": True, "result": None}
    response = channel.handle(
        {"id": 2, "method": "configureSocksProxy", "arguments": {"enabled": False, "port": 4447}}
    )
    assert response == {"id": 2, "ok": True, "result": None}


def test_proxy_toggle_is_atomic(channel):
    channel.call("configureHttpProxy", {"enabled": True, "port": 4444})
    channel.call("configureHttpProxy", {"enabled": False, "port": 4444})
    assert channel.call("getProxyConfig") == {
        "http": {"enabled": False, "port": 4444},
        "socks": {"enabled": True, "port": 4447},
    }


def test_get_data_path(controller, data_path):
    bare = CommandChannel(controller)
    with pytest.raises(NotInitializedError):
        bare.call("getDataPath")

    with_default = CommandChannel(controller, default_data_path="/var/lib/i2pd")
    assert with_default.call("getDataPath") == "/var/lib/i2pd"

    with_default.call("initialize", {"dataPath": str(data_path)})
    assert with_default.call("getDataPath") == str(data_path)


def test_state_and_logs(channel, data_path):
    assert channel.call("getState") == "uninitialized"
    channel.call("initialize", {"dataPath": str(data_path)})
    channel.call("start")
    assert channel.call("getState") == "running"
    logs = channel.call("getLogs", {"maxLines": 1})
    assert logs == "[INFO] i2pd started"
    assert "i2pd initialized" in channel.call("getLogs")


def test_clear_logs(channel, data_path):
    channel.call("initialize", {"dataPath": str(data_path)})
    channel.call("start")
    assert channel.call("clearLogs") is None
    assert channel.call("getLogs") == ""
    channel.call("stop")
    assert channel.call("getLogs") == "[INFO] i2pd stopped"


def test_config_options_reach_engine_on_start(channel, engine, data_path):
    assert channel.call("getConfig", {"key": "bandwidth"}) == ""
    assert channel.call("setConfig", {"key": "bandwidth", "value": "P"}) is None
    channel.call("setConfig", {"key": "sam.enabled", "value": "false"})
    assert channel.call("getConfig", {"key": "bandwidth"}) == "P"
    assert channel.call("getConfig", {"key": "httpproxy.port"}) == "4444"

    channel.call("initialize", {"dataPath": str(data_path)})
    channel.call("start")

    assert engine.last_overrides["bandwidth"] == "P"
    assert engine.last_overrides["sam.enabled"] == "false"
    assert engine.last_overrides["httpproxy.port"] == "4444"


def test_engine_error_is_reported_not_raised(channel, engine, data_path):
    engine.fail_on.add("init")
    response = channel.handle({"id": "a", "method": "initialize", "arguments": {"dataPath": str(data_path)}})
    assert response["ok"] is False
    assert response["error"]["code"] == "ENGINE_ERROR"
    assert response["error"]["message"] == "init failed"


def test_unexpected_exception_becomes_internal_error(channel, controller, monkeypatch):
    def broken():
        raise RuntimeError("kaboom")

    monkeypatch.setattr(controller, "stop", broken)
    response = channel.handle({"id": 3, "method": "stop"})
    assert response["ok"] is False
    assert response["error"] == {"code": "INTERNAL", "message": "kaboom"}


@pytest.mark.parametrize("request_obj", [None, [], "start", {"arguments": {}}, {"method": 5}])
def test_malformed_requests(channel, request_obj):
    response = channel.handle(request_obj)
    assert response["ok"] is False
    assert response["error"]["code"] == "INVALID_ARGUMENT"


def test_serve_lines(channel, data_path):
    requests_in = [
        {"id": 1, "method": "initialize", "arguments": {"dataPath": str(data_path)}},
        {"id": 2, "method": "start"},
        {"id": 3, "method": "nope"},
    ]
    text = "\n".join(json.dumps(r) for r in requests_in) + "\n\n{not json\n"
    out = io.StringIO()

    served = serve_lines(channel, io.StringIO(text), out)

    responses = [json.loads(line) for line in out.getvalue().splitlines()]
    assert served == 4
    assert responses[0] == {"id": 1, "ok": True, "result": True}
    assert responses[1] == {"id": 2, "ok": True, "result": True}
    assert responses[2]["error"]["code"] == "UNSUPPORTED_OPERATION"
    assert responses[3]["id"] is None
    assert responses[3]["error"]["code"] == "INVALID_ARGUMENT"


def test_methods_listing(channel):
    assert {
        "initialize",
        "start",
        "stop",
        "gracefulShutdown",
        "getRouterInfo",
        "getDataPath",
        "configureHttpProxy",
        "configureSocksProxy",
        "clearLogs",
        "getConfig",
        "setConfig",
    } <= set(channel.methods)
