"""
参考 host executor：按节奏 drain broker 队列，逐个执行并回传结果。

说明：
- 真实 host 运行在无法被回调的沙箱进程里，只能主动轮询；本模块用同样的方式（`/poll` + `/response`）驱动任意 dispatcher；
- 每个被取走的请求恰好回传一次结果；dispatcher 抛出的异常转为失败结果；
- operation 的语义由 dispatcher 决定，broker 与 executor 都不解释载荷。
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pilot_bridge import __version__
from pilot_bridge.core.contracts import BridgeRequest, BridgeResult
from pilot_bridge.core.errors import BridgeTransportError
from pilot_bridge.topology.remote import RemoteBroker

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]
Dispatcher = Callable[[str, Any], Union[Any, Awaitable[Any]]]


class OperationRegistry:
    """operation 名称 -> handler 的映射（可直接作为 dispatcher 使用）。"""

    def __init__(self) -> None:
        """创建空注册表。"""

        self._handlers: Dict[str, Handler] = {}

    def register(self, operation: str, handler: Handler) -> None:
        """注册 handler（同名覆盖）。"""

        self._handlers[str(operation)] = handler

    def names(self) -> list[str]:
        """已注册的 operation 名称（排序）。"""

        return sorted(self._handlers)

    async def __call__(self, operation: str, params: Any) -> Any:
        """执行 operation；未注册时抛 `LookupError("Unknown operation: ...")`。"""

        handler = self._handlers.get(operation)
        if handler is None:
            raise LookupError(f"Unknown operation: {operation}")
        out = handler(params)
        if inspect.isawaitable(out):
            out = await out
        return out


def builtin_registry() -> OperationRegistry:
    """内置 operations：`status`（连接信息）与 `echo`（原样返回 params），用于联调。"""

    reg = OperationRegistry()
    reg.register("status", lambda _params: {"connected": True, "hostVersion": __version__, "pid": os.getpid()})
    reg.register("echo", lambda params: params)
    return reg


class HostExecutor:
    """轮询式 host。"""

    def __init__(self, *, broker: RemoteBroker, dispatch: Dispatcher, poll_interval_ms: int = 500) -> None:
        """
        参数：
        - broker：broker 的 HTTP 客户端
        - dispatch：`(operation, params) -> data`（同步或异步）；抛异常即失败
        - poll_interval_ms：两次 drain 之间的间隔
        """

        self._broker = broker
        self._dispatch = dispatch
        self._poll_interval_ms = int(poll_interval_ms)

    async def execute(self, request: BridgeRequest) -> BridgeResult:
        """
        执行单个请求并构造结果（不抛异常）。

        说明：
        - 返回值先按 JSON 模式归一（如 datetime → ISO 字符串）；
        - 归一后仍无法编码为 JSON 的返回值按失败处理，保证回传一定能发出。
        """

        try:
            data = self._dispatch(request.operation, request.params)
            if inspect.isawaitable(data):
                data = await data
        except Exception as exc:
            logger.debug("operation %s failed: %s", request.operation, exc, exc_info=True)
            return BridgeResult.failed(request.id, str(exc))

        try:
            wire = BridgeResult.ok(request.id, data).model_dump(mode="json")
            json.dumps(wire)
        except (TypeError, ValueError) as exc:
            logger.warning("operation %s returned a non-JSON value: %s", request.operation, exc)
            return BridgeResult.failed(
                request.id, f"Result of {request.operation} is not JSON serializable: {type(data).__name__}"
            )
        return BridgeResult.ok(request.id, wire["data"])

    async def run_once(self) -> int:
        """
        执行一轮：drain → 逐个执行（FIFO）→ 逐个回传。

        返回：
        - int：本轮处理的请求数

        异常：
        - BridgeTransportError：poll 失败（单个回传失败只记录，不中断本轮）
        """

        requests = await self._broker.poll()
        for req in requests:
            result = await self.execute(req)
            try:
                matched = await self._broker.respond(result)
            except BridgeTransportError as exc:
                logger.warning("response for id=%s was not delivered: %s", req.id, exc)
                continue
            if not matched:
                logger.info("result for id=%s arrived after the caller stopped waiting", req.id)
        return len(requests)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        持续轮询直到 `stop_event` 被设置。

        说明：
        - 传输错误只记录并在下一轮重试（broker 可能尚未启动或正在重启）。
        """

        stop = stop_event or asyncio.Event()
        interval = self._poll_interval_ms / 1000.0
        while not stop.is_set():
            try:
                await self.run_once()
            except BridgeTransportError as exc:
                logger.warning("poll failed: %s", exc)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
