"""Broker：CorrelationEngine + HTTP transport + 进程内服务。"""

from __future__ import annotations

from pilot_bridge.broker.engine import CorrelationEngine, HealthSnapshot, PendingEntry
from pilot_bridge.broker.liveness import LivenessState
from pilot_bridge.broker.server import BrokerServer, bind_listen_socket

__all__ = ["BrokerServer", "CorrelationEngine", "HealthSnapshot", "LivenessState", "PendingEntry", "bind_listen_socket"]
