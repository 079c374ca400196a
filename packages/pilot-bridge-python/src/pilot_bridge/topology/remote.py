"""
RemoteBroker：通过 HTTP 访问已存在的 broker（delegate 调用方与 host 共用）。

说明：
- 每次调用新建 `httpx.AsyncClient`（调用频率低，避免长连接生命周期管理）；
- 网络失败与不可解析的响应统一映射为 `BridgeTransportError`；
- `/queue` 的失败结果按 `errorKind` 还原为对应异常类型。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from pilot_bridge.config.loader import BridgeConfig
from pilot_bridge.core.contracts import BridgeRequest, BridgeResult, QueueOutcome
from pilot_bridge.core.errors import BridgeTransportError, error_from_wire

_CONTROL_READ_TIMEOUT_SEC = 5.0


class RemoteBroker:
    """HTTP 客户端（/queue /poll /response /health）。"""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        参数：
        - config：完整配置（使用 `broker.*` 与 `client.*`）
        - base_url：覆盖 broker 地址（缺省由 `broker.host/port` 拼接）
        - transport：可注入的 httpx transport（测试可用 `httpx.ASGITransport`）
        """

        self._cfg = config
        self._base_url = (base_url or config.base_url).rstrip("/")
        self._transport = transport

    @property
    def base_url(self) -> str:
        """broker 地址。"""

        return self._base_url

    def _client(self, *, read_timeout_sec: float) -> httpx.AsyncClient:
        """构造一次性 AsyncClient。"""

        timeout = httpx.Timeout(read_timeout_sec, connect=self._cfg.client.connect_timeout_ms / 1000.0)
        # 本机 broker 不经过环境变量中的代理
        return httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=self._transport, trust_env=False)

    def _unreachable(self, exc: Exception) -> BridgeTransportError:
        """把 httpx 异常包装为 `BridgeTransportError`。"""

        return BridgeTransportError(
            f"Bridge broker unreachable at {self._base_url}: {exc.__class__.__name__}: {exc}",
            code="BROKER_UNREACHABLE",
            details={"base_url": self._base_url},
        )

    def _bad_response(self, resp: httpx.Response, reason: str) -> BridgeTransportError:
        """响应不符合 wire 契约。"""

        return BridgeTransportError(
            f"Bridge broker returned an invalid response (HTTP {resp.status_code}): {reason}",
            code="BROKER_BAD_RESPONSE",
            details={"base_url": self._base_url, "status_code": resp.status_code},
        )

    def _json(self, resp: httpx.Response) -> Any:
        """解析 JSON body；失败视为传输层错误。"""

        try:
            return resp.json()
        except ValueError:
            raise self._bad_response(resp, "body is not JSON") from None

    async def queue(self, operation: str, params: Any = None, timeout_ms: Optional[int] = None) -> Any:
        """
        入队并等待结果（对应 `POST /queue`）。

        参数：
        - operation：operation 名称
        - params：参数载荷
        - timeout_ms：超时；缺省使用 `broker.default_timeout_ms`

        返回：
        - 成功结果的 data

        异常：
        - BridgeTransportError：网络失败/响应不可解析
        - 其它 BridgeError：按远端 `errorKind` 还原
        """

        # 非正数原样转发，由 broker 按 validation 拒绝（与 owner 路径一致）
        effective_ms = int(timeout_ms) if timeout_ms is not None else int(self._cfg.broker.default_timeout_ms)
        read_timeout = (max(effective_ms, 0) + self._cfg.client.timeout_grace_ms) / 1000.0
        body = {"operation": operation, "params": {} if params is None else params, "timeout": effective_ms}
        try:
            async with self._client(read_timeout_sec=read_timeout) as client:
                resp = await client.post("/queue", json=body)
        except httpx.TransportError as exc:
            raise self._unreachable(exc) from exc

        try:
            outcome = QueueOutcome.model_validate(self._json(resp))
        except ValidationError:
            raise self._bad_response(resp, "not a queue outcome") from None
        if outcome.success:
            return outcome.data
        raise error_from_wire(outcome.error_kind, outcome.error, operation=operation)

    async def poll(self) -> List[BridgeRequest]:
        """取走远端队列（对应 `GET /poll`）。"""

        try:
            async with self._client(read_timeout_sec=_CONTROL_READ_TIMEOUT_SEC) as client:
                resp = await client.get("/poll")
        except httpx.TransportError as exc:
            raise self._unreachable(exc) from exc

        obj = self._json(resp)
        if resp.status_code != 200 or not isinstance(obj, dict) or not isinstance(obj.get("requests"), list):
            raise self._bad_response(resp, "missing `requests` list")
        try:
            return [BridgeRequest.model_validate(r) for r in obj["requests"]]
        except ValidationError:
            raise self._bad_response(resp, "malformed request entry") from None

    async def respond(self, result: BridgeResult) -> bool:
        """
        回传结果（对应 `POST /response`）。

        返回：
        - 远端是否匹配到等待中的调用
        """

        try:
            async with self._client(read_timeout_sec=_CONTROL_READ_TIMEOUT_SEC) as client:
                resp = await client.post("/response", json=result.model_dump(mode="json"))
        except httpx.TransportError as exc:
            raise self._unreachable(exc) from exc

        obj = self._json(resp)
        if resp.status_code != 200 or not isinstance(obj, dict):
            raise self._bad_response(resp, str(obj.get("error") if isinstance(obj, dict) else obj))
        return bool(obj.get("matched", True))

    async def health(self) -> Dict[str, Any]:
        """读取远端存活快照（对应 `GET /health`）。"""

        try:
            async with self._client(read_timeout_sec=_CONTROL_READ_TIMEOUT_SEC) as client:
                resp = await client.get("/health")
        except httpx.TransportError as exc:
            raise self._unreachable(exc) from exc

        obj = self._json(resp)
        if resp.status_code != 200 or not isinstance(obj, dict):
            raise self._bad_response(resp, "health is not an object")
        return obj
