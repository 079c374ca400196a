"""
Correlation Engine：把“host 单向轮询”变成有序、可超时的请求/响应通道。

职责：
- 持有待 drain 的请求队列（FIFO）与等待结果的 in-flight 表（id -> PendingEntry）；
- 按 id 把 host 回传的结果匹配到对应调用方的 Future；
- 执行超时、队列深度/in-flight 上限；
- 由 poll 节奏推导 host 存活信号。

并发约束：
- 所有状态变更都在同一把 `threading.Lock` 内完成；
- Future 只在其所属 event loop 上 settle（跨线程调用走 `call_soon_threadsafe`）；
- 每个 PendingEntry 只会被“第一个把它从 in-flight 表 pop 出来的路径”settle，
  因此 resolve / timeout / shutdown / abandon 之间天然互斥，重复移除是 no-op。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from pilot_bridge.broker.liveness import LivenessState
from pilot_bridge.config.loader import BrokerConfig
from pilot_bridge.core.contracts import BridgeRequest, BridgeResult, generate_request_id
from pilot_bridge.core.errors import (
    BridgeError,
    BridgeStoppedError,
    BridgeTimeoutError,
    CapacityError,
    MalformedInputError,
    OperationFailedError,
)

logger = logging.getLogger(__name__)


@dataclass
class PendingEntry:
    """
    一次等待结果的调用（broker 内部簿记）。

    说明：
    - future 绑定在调用方所在的 event loop 上；
    - timer 为超时兜底：即使 host 永不响应，调用方也一定会得到结果。
    """

    request: BridgeRequest
    timeout_ms: int
    loop: asyncio.AbstractEventLoop
    future: "asyncio.Future[Any]"
    created_at_monotonic: float
    timer: Optional[asyncio.TimerHandle] = None
    drained: bool = False


@dataclass(frozen=True)
class HealthSnapshot:
    """`/health` 的只读快照。"""

    live: bool
    pending_requests: int
    queued_requests: int
    unmatched_results: int
    last_poll_at: Optional[int]
    last_response_at: Optional[int]
    last_request_at: Optional[int]

    def to_wire(self, *, role: str = "owner") -> Dict[str, Any]:
        """投影为 wire JSON（camelCase，时间为 epoch 毫秒或 null）。"""

        return {
            "status": "ok",
            "role": role,
            "live": self.live,
            "pluginConnected": self.live,
            "pendingRequests": self.pending_requests,
            "queuedRequests": self.queued_requests,
            "unmatchedResults": self.unmatched_results,
            "lastPollAt": self.last_poll_at,
            "lastResponseAt": self.last_response_at,
            "lastRequestAt": self.last_request_at,
        }


def _current_loop() -> Optional[asyncio.AbstractEventLoop]:
    """返回当前线程正在运行的 loop（没有则 None）。"""

    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class CorrelationEngine:
    """
    broker 状态机（进程内、非持久化）。

    生命周期：`start()` 之后才接受 enqueue；`shutdown()` 拒绝所有等待中的调用并清空队列，可重复调用。
    每个请求的状态：accepted → queued → drained(可选) → resolved | rejected-by-timeout | rejected-by-shutdown。
    """

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """
        创建 engine。

        参数：
        - config：broker 配置（超时/上限/新鲜度窗口）；缺省使用默认值
        - clock：单调时钟（秒），用于存活判断
        - wall_clock：墙钟（秒），仅用于对外展示的时间戳
        """

        self._cfg = config or BrokerConfig()
        self._clock = clock
        self._wall_clock = wall_clock

        self._lock = threading.Lock()
        self._queue: Deque[BridgeRequest] = deque()
        self._pending: Dict[str, PendingEntry] = {}
        self._liveness = LivenessState()
        self._unmatched_results = 0
        self._running = False

    @property
    def config(self) -> BrokerConfig:
        """当前 broker 配置。"""

        return self._cfg

    @property
    def running(self) -> bool:
        """是否处于可接受 enqueue 的状态。"""

        with self._lock:
            return self._running

    def start(self) -> None:
        """进入 running 状态（幂等）。"""

        with self._lock:
            self._running = True

    def _now_ms(self) -> int:
        """墙钟 epoch 毫秒。"""

        return int(self._wall_clock() * 1000)

    def _effective_timeout_ms(self, timeout_ms: Optional[int]) -> int:
        """计算生效超时：缺省用默认值；两者都按上限截断。"""

        if timeout_ms is None:
            return min(int(self._cfg.default_timeout_ms), int(self._cfg.max_timeout_ms))
        if int(timeout_ms) <= 0:
            raise MalformedInputError("timeout must be a positive number of milliseconds", code="INVALID_TIMEOUT")
        return min(int(timeout_ms), int(self._cfg.max_timeout_ms))

    # ------------------------------------------------------------------
    # caller side
    # ------------------------------------------------------------------

    def submit(self, operation: str, params: Any = None, timeout_ms: Optional[int] = None) -> PendingEntry:
        """
        接受一次调用并入队（enqueue 的同步部分）。

        参数：
        - operation：operation 名称（不透明）
        - params：参数载荷（不透明；缺省为 `{}`）
        - timeout_ms：调用方指定的超时；缺省使用 `default_timeout_ms`

        返回：
        - PendingEntry：其 future 最终恰好 settle 一次

        异常：
        - BridgeStoppedError：broker 未运行
        - CapacityError：队列或 in-flight 已满（不阻塞、不入队）
        - MalformedInputError：超时值非法
        """

        loop = asyncio.get_running_loop()
        effective_ms = self._effective_timeout_ms(timeout_ms)
        request = BridgeRequest(id=generate_request_id(), operation=operation, params={} if params is None else params)

        with self._lock:
            if not self._running:
                raise BridgeStoppedError(details={"operation": operation})
            if len(self._queue) >= self._cfg.max_queue:
                raise CapacityError(
                    f"Request queue is full ({self._cfg.max_queue})",
                    code="QUEUE_FULL",
                    details={"operation": operation, "max_queue": self._cfg.max_queue},
                )
            if len(self._pending) >= self._cfg.max_pending:
                raise CapacityError(
                    f"Too many in-flight requests ({self._cfg.max_pending})",
                    code="IN_FLIGHT_FULL",
                    details={"operation": operation, "max_pending": self._cfg.max_pending},
                )

            entry = PendingEntry(
                request=request,
                timeout_ms=effective_ms,
                loop=loop,
                future=loop.create_future(),
                created_at_monotonic=self._clock(),
            )
            entry.timer = loop.call_later(effective_ms / 1000.0, self._expire, request.id)
            self._pending[request.id] = entry
            self._queue.append(request)
            self._liveness.last_request_at_ms = self._now_ms()

        logger.debug("accepted request id=%s operation=%s timeout_ms=%s", request.id, operation, effective_ms)
        return entry

    async def enqueue(self, operation: str, params: Any = None, timeout_ms: Optional[int] = None) -> Any:
        """
        入队并等待结果。

        返回：
        - host 成功结果的 `data`

        异常：
        - CapacityError / BridgeStoppedError / MalformedInputError：同步拒绝（见 `submit`）
        - OperationFailedError：host 返回失败
        - BridgeTimeoutError：超时（message 含 operation 名称）
        - BridgeStoppedError：等待期间 broker 停止
        """

        entry = self.submit(operation, params, timeout_ms)
        try:
            return await entry.future
        except asyncio.CancelledError:
            # 调用方放弃等待：立即释放 in-flight 名额，不等超时
            self.abandon(entry.request.id)
            raise

    def abandon(self, request_id: str) -> bool:
        """
        主动移除一个等待中的调用（调用方已不再需要结果）。

        返回：
        - True：找到并移除；False：不存在（已 settle / 从未存在）
        """

        with self._lock:
            entry = self._pending.pop(request_id, None)
            if entry is None:
                return False
            self._remove_queued_locked(request_id)
        self._settle(entry, error=None, data=None, cancel=True)
        logger.debug("abandoned request id=%s operation=%s", request_id, entry.request.operation)
        return True

    # ------------------------------------------------------------------
    # host side
    # ------------------------------------------------------------------

    def drain(self) -> List[BridgeRequest]:
        """
        原子取走队列中的全部请求（FIFO），并刷新存活时间戳。

        空队列返回空列表；已取走的请求不会再次出现在任何 drain 中。
        """

        with self._lock:
            items = list(self._queue)
            self._queue.clear()
            for req in items:
                entry = self._pending.get(req.id)
                if entry is not None:
                    entry.drained = True
            self._liveness.last_poll_monotonic = self._clock()
            self._liveness.last_poll_at_ms = self._now_ms()

        if items:
            logger.debug("drained %d request(s)", len(items))
        return items

    def deliver(self, result: BridgeResult) -> bool:
        """
        投递 host 的执行结果。

        返回：
        - True：匹配到等待中的调用并 settle
        - False：无匹配（已超时/重复/未知 id）；记录日志后丢弃，不抛异常
        """

        unmatched = 0
        with self._lock:
            self._liveness.last_response_at_ms = self._now_ms()
            entry = self._pending.pop(result.id, None)
            if entry is None:
                self._unmatched_results += 1
                unmatched = self._unmatched_results
            elif not entry.drained:
                # 结果先于 drain 到达：请求不再交给 host
                self._remove_queued_locked(result.id)

        if entry is None:
            logger.warning("no pending request for result id=%s (unmatched_total=%d)", result.id, unmatched)
            return False

        if result.success:
            self._settle(entry, data=result.data, error=None)
        else:
            self._settle(entry, data=None, error=OperationFailedError(result.error or "", operation=entry.request.operation))
        logger.debug("delivered result id=%s success=%s", result.id, result.success)
        return True

    # ------------------------------------------------------------------
    # lifecycle / observability
    # ------------------------------------------------------------------

    def shutdown(self) -> int:
        """
        停止 broker：拒绝全部等待中的调用（`Bridge stopped`），清空队列与 in-flight 表。

        可重复调用；无待处理工作时为 no-op。

        返回：
        - int：本次被拒绝的调用数
        """

        with self._lock:
            self._running = False
            entries = list(self._pending.values())
            self._pending.clear()
            self._queue.clear()

        for entry in entries:
            self._settle(entry, data=None, error=BridgeStoppedError(details={"operation": entry.request.operation}))
        if entries:
            logger.info("bridge stopped; rejected %d pending request(s)", len(entries))
        return len(entries)

    def snapshot(self) -> HealthSnapshot:
        """只读快照（不修改任何状态）。"""

        with self._lock:
            return HealthSnapshot(
                live=self._liveness.is_live(now_monotonic=self._clock(), ttl_ms=self._cfg.health_ttl_ms),
                pending_requests=len(self._pending),
                queued_requests=len(self._queue),
                unmatched_results=self._unmatched_results,
                last_poll_at=self._liveness.last_poll_at_ms,
                last_response_at=self._liveness.last_response_at_ms,
                last_request_at=self._liveness.last_request_at_ms,
            )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _remove_queued_locked(self, request_id: str) -> None:
        """从队列移除指定请求（调用方需持有锁）。"""

        for req in self._queue:
            if req.id == request_id:
                self._queue.remove(req)
                return

    def _expire(self, request_id: str) -> None:
        """超时回调（运行在调用方 loop 上）。"""

        with self._lock:
            entry = self._pending.pop(request_id, None)
            if entry is None:
                return
            # 未被取走的请求一并出队，避免 host 执行已被放弃的工作
            self._remove_queued_locked(request_id)

        operation = entry.request.operation
        logger.debug("request id=%s operation=%s timed out after %sms", request_id, operation, entry.timeout_ms)
        self._settle(entry, data=None, error=BridgeTimeoutError(operation, timeout_ms=entry.timeout_ms))

    def _settle(self, entry: PendingEntry, *, data: Any, error: Optional[BridgeError], cancel: bool = False) -> None:
        """
        在 entry 所属 loop 上 settle future 并取消 timer。

        约束：调用前 entry 必须已从 in-flight 表移除（保证只 settle 一次）。
        """

        def _resolve() -> None:
            """实际 settle 动作（只在 owner loop 上执行）。"""

            if entry.timer is not None:
                entry.timer.cancel()
            if entry.future.done():
                return
            if cancel:
                entry.future.cancel()
            elif error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(data)

        if _current_loop() is entry.loop:
            _resolve()
            return
        try:
            entry.loop.call_soon_threadsafe(_resolve)
        except RuntimeError:
            # loop 已关闭：调用方已不存在，无需通知
            logger.debug("owner loop closed; dropping settlement for id=%s", entry.request.id)
