"""核心契约与错误分类。"""

from __future__ import annotations

from pilot_bridge.core.contracts import BridgeRequest, BridgeResult, QueueCall, QueueOutcome, generate_request_id
from pilot_bridge.core.errors import (
    AddressInUseError,
    BridgeError,
    BridgeStoppedError,
    BridgeTimeoutError,
    BridgeTransportError,
    CapacityError,
    MalformedInputError,
    OperationFailedError,
    error_from_wire,
)

__all__ = [
    "AddressInUseError",
    "BridgeError",
    "BridgeRequest",
    "BridgeResult",
    "BridgeStoppedError",
    "BridgeTimeoutError",
    "BridgeTransportError",
    "CapacityError",
    "MalformedInputError",
    "OperationFailedError",
    "QueueCall",
    "QueueOutcome",
    "error_from_wire",
    "generate_request_id",
]
