"""
Command channel between the host application and the router controller.

Requests are ``{"id": ..., "method": "<name>", "arguments": {...}}``; responses
echo the id with either ``{"ok": true, "result": ...}`` or
``{"ok": false, "error": {"code": ..., "message": ...}}``. One call is
processed at a time per channel.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, IO, Mapping, Optional

from .controller import RouterController
from .errors import (
    BridgeError,
    InvalidArgumentError,
    NotInitializedError,
    UnsupportedOperationError,
)
from .status import StatusAggregator

LOGGER = logging.getLogger("i2pd_bridge.channel")

DEFAULT_LOG_LINES = 200


def _require_str(args: Mapping[str, Any], key: str) -> str:
    if key not in args:
        raise InvalidArgumentError(f"missing required argument '{key}'")
    value = args[key]
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"'{key}' must be a non-empty string")
    return value


def _require_bool(args: Mapping[str, Any], key: str) -> bool:
    if key not in args:
        raise InvalidArgumentError(f"missing required argument '{key}'")
    value = args[key]
    if not isinstance(value, bool):
        raise InvalidArgumentError(f"'{key}' must be a boolean")
    return value


def _require_port(args: Mapping[str, Any], key: str = "port") -> int:
    if key not in args:
        raise InvalidArgumentError(f"missing required argument '{key}'")
    value = args[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"'{key}' must be an integer")
    if not 1 <= value <= 65535:
        raise InvalidArgumentError(f"'{key}' must be within 1-65535, got {value}")
    return value


def _optional_count(args: Mapping[str, Any], key: str, default: int) -> int:
    if args.get(key) is None:
        return default
    value = args[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgumentError(f"'{key}' must be a non-negative integer")
    return value


class CommandChannel:
    def __init__(
        self,
        controller: RouterController,
        aggregator: Optional[StatusAggregator] = None,
        default_data_path: Optional[str] = None,
    ):
        self.controller = controller
        self.aggregator = aggregator or StatusAggregator(controller)
        self.default_data_path = default_data_path
        self._lock = threading.Lock()
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
            "initialize": self._initialize,
            "start": self._start,
            "stop": self._stop,
            "gracefulShutdown": self._graceful_shutdown,
            "getRouterInfo": self._get_router_info,
            "getDataPath": self._get_data_path,
            "configureHttpProxy": self._configure_http_proxy,
            "configureSocksProxy": self._configure_socks_proxy,
            "getState": self._get_state,
            "getProxyConfig": self._get_proxy_config,
            "getLogs": self._get_logs,
            "clearLogs": self._clear_logs,
            "getConfig": self._get_config,
            "setConfig": self._set_config,
        }

    @property
    def methods(self):
        return sorted(self._handlers)

    def call(self, method: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        """Run one operation; raises BridgeError subclasses on failure."""
        if not isinstance(method, str) or not method:
            raise InvalidArgumentError("method must be a non-empty string")
        handler = self._handlers.get(method)
        if handler is None:
            raise UnsupportedOperationError(f"unknown method '{method}'")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise InvalidArgumentError("arguments must be an object")
        with self._lock:
            return handler(arguments)

    def handle(self, request: Any) -> Dict[str, Any]:
        """Wire entry point: never raises, always returns a response object."""
        rid = request.get("id") if isinstance(request, dict) else None
        try:
            if not isinstance(request, dict):
                raise InvalidArgumentError("request must be an object")
            result = self.call(request.get("method"), request.get("arguments"))
        except BridgeError as exc:
            LOGGER.info("%s failed: %s %s", _method_name(request), exc.code, exc.message)
            return {"id": rid, "ok": False, "error": exc.to_wire()}
        except Exception as exc:
            LOGGER.exception("Unhandled error in %s", _method_name(request))
            return {"id": rid, "ok": False, "error": {"code": "INTERNAL", "message": str(exc)}}
        return {"id": rid, "ok": True, "result": result}

    # handlers -------------------------------------------------------------
    def _initialize(self, args: Mapping[str, Any]) -> bool:
        return self.controller.initialize(_require_str(args, "dataPath"))

    def _start(self, args: Mapping[str, Any]) -> bool:
        return self.controller.start()

    def _stop(self, args: Mapping[str, Any]) -> None:
        self.controller.stop()

    def _graceful_shutdown(self, args: Mapping[str, Any]) -> None:
        self.controller.graceful_shutdown()

    def _get_router_info(self, args: Mapping[str, Any]) -> dict:
        return self.aggregator.query_status().as_dict()

    def _get_data_path(self, args: Mapping[str, Any]) -> str:
        layout = self.controller.layout
        if layout:
            return str(layout.root)
        if self.default_data_path:
            return self.default_data_path
        raise NotInitializedError("no data path configured")

    def _configure_http_proxy(self, args: Mapping[str, Any]) -> None:
        enabled = _require_bool(args, "enabled")
        self.controller.configure_http_proxy(enabled, _require_port(args))

    def _configure_socks_proxy(self, args: Mapping[str, Any]) -> None:
        enabled = _require_bool(args, "enabled")
        self.controller.configure_socks_proxy(enabled, _require_port(args))

    def _get_state(self, args: Mapping[str, Any]) -> str:
        return self.controller.state.value

    def _get_proxy_config(self, args: Mapping[str, Any]) -> dict:
        return self.controller.proxy_config.as_dict()

    def _get_logs(self, args: Mapping[str, Any]) -> str:
        max_lines = _optional_count(args, "maxLines", DEFAULT_LOG_LINES)
        return self.controller.engine.read_logs(max_lines)

    def _clear_logs(self, args: Mapping[str, Any]) -> None:
        self.controller.engine.clear_logs()

    def _get_config(self, args: Mapping[str, Any]) -> str:
        return self.controller.get_option(_require_str(args, "key"))

    def _set_config(self, args: Mapping[str, Any]) -> None:
        key = _require_str(args, "key")
        if not isinstance(args.get("value"), str):
            raise InvalidArgumentError("'value' must be a string")
        self.controller.set_option(key, args["value"])


def _method_name(request: Any) -> str:
    if isinstance(request, dict):
        return str(request.get("method") or "<unknown>")
    return "<unknown>"


# ──────────────────────────────────────────────────────────────
# JSON-lines transport
# ──────────────────────────────────────────────────────────────
def decode_request(line: str) -> Any:
    try:
        return json.loads(line)
    except ValueError as exc:
        raise InvalidArgumentError(f"malformed request: {exc}") from exc


def serve_lines(
    channel: CommandChannel,
    instream: IO[str],
    outstream: IO[str],
    stop: Optional[threading.Event] = None,
) -> int:
    """Answer one JSON request per input line until EOF or ``stop``; returns requests served."""
    served = 0
    for line in instream:
        if stop is not None and stop.is_set():
            break
        line = line.strip()
        if not line:
            continue
        try:
            request = decode_request(line)
        except InvalidArgumentError as exc:
            response: Dict[str, Any] = {"id": None, "ok": False, "error": exc.to_wire()}
        else:
            response = channel.handle(request)
        outstream.write(json.dumps(response, default=str) + "\n")
        outstream.flush()
        served += 1
    return served
