"""
Broker Transport：把 CorrelationEngine 的操作暴露为本机 HTTP 接口。

端点：
- GET  /poll      host 取走队列（drain）
- POST /response  host 回传结果（deliver）
- POST /queue     调用方入队并阻塞等待结果（enqueue-and-await）
- GET  /health    只读存活探针
- OPTIONS *       CORS 预检（204）

约束：
- 本模块只调用 engine 的公开操作，不直接触碰队列/in-flight 表；
- 非法 JSON / 字段不合法 / 超大请求体在边界处被拒绝（4xx），不会进入 engine。
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from pilot_bridge import __version__
from pilot_bridge.broker.engine import CorrelationEngine
from pilot_bridge.broker.limits import BodySizeLimitMiddleware, BodyTooLargeError
from pilot_bridge.core.contracts import BridgeResult, QueueCall, QueueOutcome
from pilot_bridge.core.errors import BridgeError

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _failure(status_code: int, message: str, *, kind: str) -> JSONResponse:
    """
    构造统一的失败响应（与 `/queue` 的结果结构一致）。

    参数：
    - status_code：HTTP 状态码
    - message：英文错误消息
    - kind：错误分类（写入 `errorKind`）
    """

    return JSONResponse(status_code=int(status_code), content={"success": False, "error": str(message), "errorKind": kind})


def status_code_for(exc: BridgeError) -> int:
    """
    `/queue` 失败时的 HTTP 状态码。

    约定：
    - capacity / stopped：503（broker 暂不可服务，调用方可稍后重试）
    - validation：400
    - timeout / operation：200（调用本身完成，结果为失败）
    """

    if exc.error_kind in ("capacity", "stopped"):
        return 503
    if exc.error_kind == "validation":
        return 400
    return 200


def _summarize_validation_error(exc: RequestValidationError) -> str:
    """把 pydantic 错误列表压缩成一行英文消息。"""

    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(x) for x in err.get("loc", ()) if x != "body")
        msg = str(err.get("msg") or "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "Invalid request body" + (f" ({'; '.join(parts)})" if parts else "")


def create_app(*, engine: CorrelationEngine, role: str = "owner") -> FastAPI:
    """
    构造 broker 的 FastAPI 应用。

    参数：
    - engine：已创建的 CorrelationEngine（由调用方负责 start/shutdown）
    - role：写入 `/health` 的角色标识
    """

    cfg = engine.config
    app = FastAPI(title="pilot-bridge", version=__version__, docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=cfg.max_body_bytes, headers=CORS_HEADERS)

    @app.middleware("http")
    async def cors_headers(request: Request, call_next: Any) -> Response:
        """所有响应附带 CORS 头；任意 OPTIONS 直接 204。"""

        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        """非法 JSON / 字段不合法 → 400。"""

        return _failure(400, _summarize_validation_error(exc), kind="validation")

    @app.exception_handler(BodyTooLargeError)
    async def on_body_too_large(request: Request, exc: BodyTooLargeError) -> JSONResponse:
        """流式读取时发现超限 → 413。"""

        return _failure(413, str(exc.detail), kind="validation")

    @app.get("/poll")
    async def poll() -> Dict[str, Any]:
        """host 取走当前队列中的全部请求。"""

        return {"requests": [r.to_wire() for r in engine.drain()]}

    @app.post("/response")
    async def deliver_response(body: BridgeResult) -> Dict[str, Any]:
        """
        host 回传结果。

        说明：
        - 未匹配（迟到/重复/未知 id）不是错误：host 无法撤回已提交的计算，只记录并丢弃；
        - `matched` 字段便于 host 侧排障。
        """

        matched = engine.deliver(body)
        return {"success": True, "matched": matched}

    @app.post("/queue")
    async def queue(body: QueueCall) -> JSONResponse:
        """入队并等待结果；任何失败都以 `{success:false,error,errorKind}` 返回。"""

        try:
            data = await engine.enqueue(body.operation, body.params, body.timeout)
        except BridgeError as exc:
            return JSONResponse(status_code=status_code_for(exc), content=QueueOutcome.from_error(exc).to_wire())
        return JSONResponse(content=QueueOutcome.from_data(data).to_wire())

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """存活探针（只读）。"""

        return engine.snapshot().to_wire(role=role)

    return app
