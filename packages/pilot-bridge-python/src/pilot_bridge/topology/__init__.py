"""Topology：Owner（持有共享地址）/ Delegate（HTTP 代理）选择与调用方门面。"""

from __future__ import annotations

from pilot_bridge.topology.remote import RemoteBroker
from pilot_bridge.topology.selector import (
    BridgeClient,
    DelegateTopology,
    OwnerTopology,
    Topology,
    TopologyRole,
    select_topology,
)

__all__ = [
    "BridgeClient",
    "DelegateTopology",
    "OwnerTopology",
    "RemoteBroker",
    "Topology",
    "TopologyRole",
    "select_topology",
]
