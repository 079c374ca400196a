"""
BrokerServer：在当前 event loop 内运行的 broker（engine + FastAPI + uvicorn）。

说明：
- 先自行 bind 监听 socket，再交给 uvicorn：bind 失败（EADDRINUSE）即“已有 broker”，
  由 topology 选择器据此转为 delegate，不做额外的“是否已在运行”探测（避免与 bind 竞争）；
- stop 时先 shutdown engine（拒绝所有等待中的调用，使阻塞中的 `/queue` 立即返回），再停止 uvicorn。
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import os
import socket
from typing import Optional

import uvicorn

from pilot_bridge.broker.app import create_app
from pilot_bridge.broker.engine import CorrelationEngine
from pilot_bridge.config.loader import BridgeConfig
from pilot_bridge.core.errors import AddressInUseError

logger = logging.getLogger(__name__)

_ADDRESS_IN_USE_ERRNOS = {errno.EADDRINUSE, 10048}  # 10048: WSAEADDRINUSE


def bind_listen_socket(host: str, port: int, *, backlog: int = 128) -> socket.socket:
    """
    绑定并监听 TCP socket。

    参数：
    - host：绑定地址（IPv4/IPv6 字面量或主机名）
    - port：端口（0 表示由系统分配）

    异常：
    - AddressInUseError：地址已被占用
    - OSError：其它绑定失败（原样抛出，不视为“已有 broker”）
    """

    infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    family, socktype, proto, _canon, sockaddr = infos[0]
    sock = socket.socket(family, socktype, proto)
    try:
        if os.name != "nt":
            # Windows 上 SO_REUSEADDR 允许抢占已监听端口，会破坏互斥语义
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(backlog)
    except OSError as exc:
        sock.close()
        if exc.errno in _ADDRESS_IN_USE_ERRNOS:
            raise AddressInUseError(host, port) from exc
        raise
    sock.setblocking(False)
    return sock


class BrokerServer:
    """
    进程内 broker（拥有共享端口的一方）。

    用法：
    - `await server.start()` / `await server.stop()`，或 `async with BrokerServer(cfg) as server: ...`
    - `server.engine` 可直接在本进程内 enqueue（owner 模式下无需经过 HTTP）。
    """

    def __init__(self, config: BridgeConfig, *, engine: Optional[CorrelationEngine] = None) -> None:
        """
        参数：
        - config：完整配置（使用 `broker.*`）
        - engine：可注入的 engine（测试用）；缺省按配置新建
        """

        self._cfg = config
        self._engine = engine or CorrelationEngine(config.broker)
        self._sock: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._port: Optional[int] = None

    @property
    def engine(self) -> CorrelationEngine:
        """本 broker 的 CorrelationEngine。"""

        return self._engine

    @property
    def port(self) -> int:
        """实际监听端口（配置为 0 时为系统分配的端口）。"""

        if self._port is None:
            raise RuntimeError("broker server is not started")
        return self._port

    @property
    def base_url(self) -> str:
        """本 broker 的 HTTP base url。"""

        return f"http://{self._cfg.broker.host}:{self.port}"

    @property
    def running(self) -> bool:
        """uvicorn 是否仍在服务。"""

        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """
        绑定端口并启动服务（返回时已可接受连接）。

        异常：
        - AddressInUseError：端口已被其它 broker 占用
        - RuntimeError：uvicorn 启动失败
        """

        if self._task is not None:
            return

        host, port = self._cfg.broker.host, self._cfg.broker.port
        sock = bind_listen_socket(host, port)
        self._sock = sock
        self._port = int(sock.getsockname()[1])

        self._engine.start()
        app = create_app(engine=self._engine, role="owner")
        uv_cfg = uvicorn.Config(
            app,
            lifespan="off",
            access_log=False,
            log_config=None,
            timeout_graceful_shutdown=5,
        )
        self._server = uvicorn.Server(uv_cfg)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                exc = self._task.exception() if not self._task.cancelled() else None
                self._engine.shutdown()
                self._close_socket()
                self._task = None
                self._server = None
                raise RuntimeError(f"broker server failed to start on {host}:{self._port}") from exc
            await asyncio.sleep(0.01)

        logger.info("bridge broker listening on %s:%s", host, self._port)

    async def wait_closed(self) -> None:
        """等待 uvicorn 退出（例如收到 SIGINT/SIGTERM）。"""

        if self._task is not None:
            await asyncio.shield(self._task)

    async def stop(self) -> None:
        """
        停止 broker（幂等）：先拒绝所有等待中的调用并清空队列，再关闭 HTTP 服务。
        """

        self._engine.shutdown()
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._server = None
        self._close_socket()

    def _close_socket(self) -> None:
        """关闭监听 socket（best-effort）。"""

        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.close()
            self._sock = None

    async def __aenter__(self) -> "BrokerServer":
        """启动并返回自身。"""

        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """退出时停止。"""

        await self.stop()
