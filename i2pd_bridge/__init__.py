"""Control bridge for a background i2pd router."""

from .channel import CommandChannel, serve_lines
from .controller import ProxyConfig, ProxySettings, RouterController, RouterState
from .engine import EngineCounters, I2PControlClient, I2pdDaemonEngine, RouterEngine, StubEngine
from .errors import (
    BridgeError,
    EngineError,
    InvalidArgumentError,
    NotInitializedError,
    UnsupportedOperationError,
    WorkspaceIOError,
)
from .scheduler import (
    BackgroundScheduler,
    ExecutionHost,
    LifecycleEvent,
    LifecycleEventSource,
    ManualEventSource,
    SignalEventSource,
    TimedExecutionHost,
)
from .status import RouterInfo, StatusAggregator
from .workspace import WorkspaceLayout, ensure_workspace, reset_config

__version__ = "0.1.0"
