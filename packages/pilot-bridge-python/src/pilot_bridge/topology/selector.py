"""
Topology Selector：决定本进程是 broker 本身（Owner）还是代理到已存在的 broker（Delegate）。

规则：
- 启动时尝试 bind 共享地址：成功 → Owner；EADDRINUSE → Delegate；其它 bind 错误原样抛出；
- Delegate 的远端调用遇到传输错误时，只做一次兜底：临时成为 broker 服务这一次调用，随后立即停止；
  若兜底 bind 仍发现地址被占用，则把原始传输错误交给调用方。
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional, Union

import httpx

from pilot_bridge.broker.server import BrokerServer
from pilot_bridge.config.loader import BridgeConfig
from pilot_bridge.core.contracts import QueueOutcome
from pilot_bridge.core.errors import AddressInUseError, BridgeError, BridgeTransportError
from pilot_bridge.topology.remote import RemoteBroker

logger = logging.getLogger(__name__)


class TopologyRole(str, Enum):
    """本进程在 bridge 中的角色。"""

    OWNER = "owner"
    DELEGATE = "delegate"


class OwnerTopology:
    """本进程持有共享地址：调用直接进入本地 engine。"""

    role = TopologyRole.OWNER

    def __init__(self, server: BrokerServer) -> None:
        """参数：server：已启动的 BrokerServer。"""

        self.server = server

    async def send(self, operation: str, params: Any = None, timeout_ms: Optional[int] = None) -> Any:
        """本地 enqueue 并等待结果。"""

        return await self.server.engine.enqueue(operation, params, timeout_ms)

    async def close(self) -> None:
        """停止本地 broker（拒绝所有等待中的调用）。"""

        await self.server.stop()


class DelegateTopology:
    """另一个进程持有共享地址：调用经 HTTP 转发过去。"""

    role = TopologyRole.DELEGATE

    def __init__(self, remote: RemoteBroker) -> None:
        """参数：remote：指向已存在 broker 的 HTTP 客户端。"""

        self.remote = remote

    async def send(self, operation: str, params: Any = None, timeout_ms: Optional[int] = None) -> Any:
        """远端 enqueue-and-await。"""

        return await self.remote.queue(operation, params, timeout_ms)

    async def close(self) -> None:
        """无持有资源。"""

        return None


Topology = Union[OwnerTopology, DelegateTopology]


async def select_topology(
    config: BridgeConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Topology:
    """
    通过 bind 尝试选择角色（每个进程只做一次）。

    参数：
    - config：完整配置
    - transport：delegate 使用的 httpx transport（测试注入）
    """

    server = BrokerServer(config)
    try:
        await server.start()
    except AddressInUseError:
        logger.info("bridge address %s in use; delegating to existing broker", config.base_url)
        return DelegateTopology(RemoteBroker(config, transport=transport))
    return OwnerTopology(server)


class BridgeClient:
    """
    调用方门面（CLI / agent tool server 使用）。

    用法：
    - `async with BridgeClient(cfg) as bridge: data = await bridge.send("status")`
    - `call()` 返回统一的 `QueueOutcome`，不抛 `BridgeError`。
    """

    def __init__(self, config: BridgeConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        """
        参数：
        - config：完整配置
        - transport：delegate 使用的 httpx transport（测试注入）
        """

        self._cfg = config
        self._transport = transport
        self._topology: Optional[Topology] = None

    @property
    def role(self) -> Optional[TopologyRole]:
        """已选定的角色（未 start 时为 None）。"""

        return self._topology.role if self._topology is not None else None

    @property
    def topology(self) -> Optional[Topology]:
        """已选定的 topology 对象。"""

        return self._topology

    async def start(self) -> TopologyRole:
        """选择 topology（幂等）。"""

        if self._topology is None:
            self._topology = await select_topology(self._cfg, transport=self._transport)
        return self._topology.role

    async def send(self, operation: str, params: Any = None, *, timeout_ms: Optional[int] = None) -> Any:
        """
        发起一次调用并返回 host 的结果 data。

        异常：
        - BridgeError 各子类（capacity/timeout/operation/stopped/transport）
        """

        await self.start()
        topology = self._topology
        assert topology is not None
        if isinstance(topology, OwnerTopology):
            return await topology.send(operation, params, timeout_ms)

        try:
            return await topology.send(operation, params, timeout_ms)
        except BridgeTransportError as exc:
            logger.warning("remote broker unreachable (%s); serving this call with a transient broker", exc)
            return await self._send_transient(operation, params, timeout_ms, cause=exc)

    async def _send_transient(
        self,
        operation: str,
        params: Any,
        timeout_ms: Optional[int],
        *,
        cause: BridgeTransportError,
    ) -> Any:
        """临时成为 broker，仅服务这一次调用，然后停止。"""

        server = BrokerServer(self._cfg)
        try:
            await server.start()
        except AddressInUseError:
            raise cause from None
        try:
            return await server.engine.enqueue(operation, params, timeout_ms)
        finally:
            await server.stop()

    async def call(self, operation: str, params: Any = None, *, timeout_ms: Optional[int] = None) -> QueueOutcome:
        """与 `send` 相同，但总是返回 `QueueOutcome`（payload 或错误消息二选一）。"""

        try:
            data = await self.send(operation, params, timeout_ms=timeout_ms)
        except BridgeError as exc:
            return QueueOutcome.from_error(exc)
        return QueueOutcome.from_data(data)

    async def close(self) -> None:
        """释放 topology（owner 会停止本地 broker）。"""

        if self._topology is not None:
            await self._topology.close()
            self._topology = None

    async def __aenter__(self) -> "BridgeClient":
        """选择 topology 并返回自身。"""

        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """退出时关闭。"""

        await self.close()
