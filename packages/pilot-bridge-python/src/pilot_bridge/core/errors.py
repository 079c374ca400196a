"""
Bridge 错误分类（异常类型）。

说明：
- 所有异常都携带稳定的 `code/message/details` 与 `error_kind`；
- `error_kind` 同时用于 wire（`/queue` 的 `errorKind` 字段）与 CLI exit code 映射；
- delegate 侧通过 `error_from_wire` 还原异常类型，保证经过代理后错误层级不丢失。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class BridgeIssue:
    """可序列化的错误对象（用于 CLI 输出与日志）。"""

    code: str
    message: str
    details: Dict[str, Any]


class BridgeError(Exception):
    """Bridge 结构化错误基类（不建议直接抛出）。"""

    error_kind = "unknown"

    def __init__(self, message: str, *, code: str = "BRIDGE_ERROR", details: Optional[Dict[str, Any]] = None) -> None:
        """创建结构化错误。

        参数：
        - `message`：英文错误消息（会原样返回给调用方）
        - `code`：稳定错误码（英文大写下划线）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        """返回错误消息本身（调用方看到的就是 message）。"""

        return self.message

    def to_issue(self) -> BridgeIssue:
        """把异常转换为可序列化问题对象。"""

        return BridgeIssue(code=self.code, message=self.message, details=dict(self.details))


class CapacityError(BridgeError):
    """队列深度或 in-flight 数量达到上限（enqueue 时同步失败，不自动重试）。"""

    error_kind = "capacity"


class BridgeTimeoutError(BridgeError):
    """在有效超时窗口内未收到 host 的结果。"""

    error_kind = "timeout"

    def __init__(self, operation: str, *, timeout_ms: Optional[int] = None, message: Optional[str] = None) -> None:
        """创建超时错误。

        参数：
        - `operation`：超时的 operation 名称（必须出现在 message 中）
        - `timeout_ms`：生效的超时时长（可选，仅用于 details）
        - `message`：覆盖默认消息（delegate 侧还原远端消息时使用）
        """

        details: Dict[str, Any] = {"operation": operation}
        if timeout_ms is not None:
            details["timeout_ms"] = int(timeout_ms)
        super().__init__(message or f"Request timeout: {operation}", code="REQUEST_TIMEOUT", details=details)
        self.operation = operation


class BridgeTransportError(BridgeError):
    """无法与远端 broker 通信（连接失败、响应不可解析等）。"""

    error_kind = "transport"


class MalformedInputError(BridgeError):
    """请求体不是合法 JSON、字段不合法或超过大小上限。"""

    error_kind = "validation"


class BridgeStoppedError(BridgeError):
    """broker 已停止：等待中的请求被放弃。"""

    error_kind = "stopped"

    def __init__(self, message: str = "Bridge stopped", *, details: Optional[Dict[str, Any]] = None) -> None:
        """创建 `BridgeStoppedError`（默认消息 `Bridge stopped`）。"""

        super().__init__(message, code="BRIDGE_STOPPED", details=details)


class OperationFailedError(BridgeError):
    """host 执行 operation 后返回了失败结果。"""

    error_kind = "operation"

    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        """创建 `OperationFailedError`。

        参数：
        - `message`：host 返回的错误消息（为空时使用 `Unknown error`）
        - `operation`：对应的 operation 名称（可选）
        """

        details = {"operation": operation} if operation else {}
        super().__init__(message or "Unknown error", code="OPERATION_FAILED", details=details)
        self.operation = operation


class AddressInUseError(BridgeError):
    """绑定地址已被占用：说明已有 broker 在运行（topology 选择信号）。"""

    error_kind = "address_in_use"

    def __init__(self, host: str, port: int) -> None:
        """创建 `AddressInUseError`。"""

        super().__init__(
            f"Address already in use: {host}:{port}",
            code="ADDRESS_IN_USE",
            details={"host": host, "port": int(port)},
        )
        self.host = host
        self.port = int(port)


def error_from_wire(kind: Optional[str], message: Optional[str], *, operation: Optional[str] = None) -> BridgeError:
    """
    根据 wire 上的 `errorKind` 还原异常类型。

    参数：
    - kind：`errorKind` 字段（缺失或未知时按 operation 失败处理）
    - message：`error` 字段
    - operation：本次调用的 operation（用于补全 details）
    """

    msg = str(message or "").strip() or "Unknown error"
    k = str(kind or "").strip()
    if k == "capacity":
        return CapacityError(msg, code="CAPACITY_EXCEEDED")
    if k == "timeout":
        return BridgeTimeoutError(operation or "", message=msg)
    if k == "stopped":
        return BridgeStoppedError(msg)
    if k == "validation":
        return MalformedInputError(msg, code="INVALID_BODY")
    if k == "transport":
        return BridgeTransportError(msg, code="BROKER_UNREACHABLE")
    return OperationFailedError(msg, operation=operation)
