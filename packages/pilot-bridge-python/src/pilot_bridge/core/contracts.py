"""
Bridge wire 契约（Request / Result / Queue 调用与结果）。

说明：
- 这些模型只描述 broker 看得见的外壳；`operation/params/data` 对 broker 而言是不透明载荷；
- 入站模型忽略未知字段（host 可能附带诊断字段），字段本身仍做严格校验。
"""

from __future__ import annotations

import itertools
import secrets
import threading
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from pilot_bridge.core.errors import BridgeError

_ID_COUNTER = itertools.count(1)
_ID_LOCK = threading.Lock()


def generate_request_id() -> str:
    """
    生成 request id（进程生命周期内唯一）。

    格式：`req_<epoch_ms>_<random>_<seq>`；seq 为进程内单调递增计数，
    保证同一毫秒内并发生成的 id 也不会冲突。
    """

    with _ID_LOCK:
        seq = next(_ID_COUNTER)
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}_{seq}"


class BridgeRequest(BaseModel):
    """一次待 host 执行的请求（创建后不可变）。"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    operation: str = Field(min_length=1)
    params: Any = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        """投影为 `/poll` 返回的 JSON 对象。"""

        return {"id": self.id, "operation": self.operation, "params": self.params}


class BridgeResult(BaseModel):
    """host 回传的执行结果（按 id 与等待中的请求匹配）。"""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    success: StrictBool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, request_id: str, data: Any = None) -> "BridgeResult":
        """构造成功结果。"""

        return cls(id=request_id, success=True, data=data)

    @classmethod
    def failed(cls, request_id: str, error: str) -> "BridgeResult":
        """构造失败结果。"""

        return cls(id=request_id, success=False, error=str(error or "") or "Unknown error")


class QueueCall(BaseModel):
    """`POST /queue` 请求体。"""

    model_config = ConfigDict(extra="ignore")

    operation: str = Field(min_length=1)
    params: Any = Field(default_factory=dict)
    timeout: Optional[int] = Field(default=None, gt=0, description="超时毫秒数；缺省使用 broker 默认值。")


class QueueOutcome(BaseModel):
    """
    调用方统一看到的结果（成功载荷或错误消息，二选一）。

    字段：
    - success：是否成功
    - data：成功时的载荷
    - error：失败时的消息
    - error_kind：失败分类（wire key 为 `errorKind`）
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    success: StrictBool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = Field(default=None, alias="errorKind")

    @classmethod
    def from_data(cls, data: Any) -> "QueueOutcome":
        """由成功载荷构造。"""

        return cls(success=True, data=data)

    @classmethod
    def from_error(cls, exc: BridgeError) -> "QueueOutcome":
        """由 `BridgeError` 构造失败结果。"""

        return cls(success=False, error=exc.message, error_kind=exc.error_kind)

    def to_wire(self) -> Dict[str, Any]:
        """序列化为 wire JSON（省略空字段；成功时保留 `data`）。"""

        obj: Dict[str, Any] = {"success": bool(self.success)}
        if self.success:
            obj["data"] = self.data
            return obj
        obj["error"] = self.error or "Unknown error"
        if self.error_kind:
            obj["errorKind"] = self.error_kind
        return obj
