"""
请求体大小上限（ASGI middleware）。

说明：
- 声明的 `Content-Length` 超限：直接 413，请求不会进入应用；
- 未声明长度（chunked）：边读边计数，超限时在读取处抛 `BodyTooLargeError`，由应用的异常处理器转成 413。
"""

from __future__ import annotations

import json
from typing import Any, Dict, MutableMapping, Optional

from fastapi import HTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send


class BodyTooLargeError(HTTPException):
    """请求体超过 `max_body_bytes`。"""

    def __init__(self, max_body_bytes: int) -> None:
        """创建 413 异常（detail 为英文消息）。"""

        super().__init__(status_code=413, detail=f"Request body exceeds {int(max_body_bytes)} bytes")
        self.max_body_bytes = int(max_body_bytes)


def _declared_length(scope: Scope) -> Optional[int]:
    """读取 `Content-Length` 头；缺失或非法时返回 None。"""

    for key, value in scope.get("headers") or []:
        if key.lower() == b"content-length":
            try:
                return int(value.decode("latin-1"))
            except ValueError:
                return None
    return None


class BodySizeLimitMiddleware:
    """在进入业务逻辑之前拒绝超大请求体。"""

    def __init__(self, app: ASGIApp, *, max_body_bytes: int, headers: Optional[Dict[str, str]] = None) -> None:
        """
        参数：
        - app：下游 ASGI 应用
        - max_body_bytes：允许的最大请求体字节数
        - headers：直接拒绝时附带的额外响应头（例如 CORS）
        """

        self.app = app
        self.max_body_bytes = int(max_body_bytes)
        self._headers = dict(headers or {})

    async def _reject(self, send: Send) -> None:
        """直接写出 413 响应。"""

        body = json.dumps(
            {
                "success": False,
                "error": f"Request body exceeds {self.max_body_bytes} bytes",
                "errorKind": "validation",
            }
        ).encode("utf-8")
        headers = [(b"content-type", b"application/json"), (b"content-length", str(len(body)).encode("latin-1"))]
        headers.extend((k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in self._headers.items())
        await send({"type": "http.response.start", "status": 413, "headers": headers})
        await send({"type": "http.response.body", "body": body})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI 入口。"""

        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = _declared_length(scope)
        if declared is not None and declared > self.max_body_bytes:
            await self._reject(send)
            return

        state: MutableMapping[str, Any] = {"received": 0, "started": False}

        async def _limited_receive() -> Message:
            """计数读取到的 body 字节，超限即抛出。"""

            message = await receive()
            if message["type"] == "http.request":
                state["received"] += len(message.get("body", b""))
                if state["received"] > self.max_body_bytes:
                    raise BodyTooLargeError(self.max_body_bytes)
            return message

        async def _tracking_send(message: Message) -> None:
            """记录响应是否已开始（开始后无法再改写为 413）。"""

            if message["type"] == "http.response.start":
                state["started"] = True
            await send(message)

        try:
            await self.app(scope, _limited_receive, _tracking_send)
        except BodyTooLargeError:
            if state["started"]:
                raise
            await self._reject(send)
