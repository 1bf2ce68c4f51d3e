"""Status snapshots assembled from the controller and the engine's own counters."""

import logging
from dataclasses import dataclass

from .controller import RouterController, RouterState
from .engine import EngineCounters
from .errors import EngineError

LOGGER = logging.getLogger("i2pd_bridge.status")

STATUS_OK = "ok"
STATUS_STOPPED = "stopped"


@dataclass(frozen=True)
class RouterInfo:
    uptime_seconds: int = 0
    status: str = STATUS_STOPPED
    known_routers: int = 0
    active_tunnels: int = 0
    participating_tunnels: int = 0
    sent_bytes: int = 0
    received_bytes: int = 0
    bandwidth_kbps: float = 0.0

    def as_dict(self) -> dict:
        return {
            "uptimeSeconds": self.uptime_seconds,
            "status": self.status,
            "knownRouters": self.known_routers,
            "activeTunnels": self.active_tunnels,
            "participatingTunnels": self.participating_tunnels,
            "sentBytes": self.sent_bytes,
            "receivedBytes": self.received_bytes,
            "bandwidthKBps": self.bandwidth_kbps,
        }


class StatusAggregator:
    """Builds a fresh RouterInfo on every call; nothing is cached between calls."""

    def __init__(self, controller: RouterController):
        self.controller = controller

    def query_status(self) -> RouterInfo:
        snap = self.controller.snapshot()
        if snap.state is not RouterState.RUNNING or snap.started_at is None:
            return RouterInfo()
        uptime = max(0, int(self.controller.clock() - snap.started_at))
        try:
            counters = self.controller.engine.query_status()
        except EngineError as exc:
            LOGGER.warning("Engine status query failed: %s", exc)
            counters = EngineCounters.zero()
        except Exception as exc:
            # query_status never raises
            LOGGER.exception("Unexpected error querying engine status: %s", exc)
            counters = EngineCounters.zero()
        return RouterInfo(
            uptime_seconds=uptime,
            status=STATUS_OK,
            known_routers=max(0, int(counters.known_routers)),
            active_tunnels=max(0, int(counters.active_tunnels)),
            participating_tunnels=max(0, int(counters.participating_tunnels)),
            sent_bytes=max(0, int(counters.sent_bytes)),
            received_bytes=max(0, int(counters.received_bytes)),
            bandwidth_kbps=max(0.0, float(counters.bandwidth_kbps)),
        )
