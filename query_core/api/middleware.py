"""HTTP 中间件链。

组合顺序固定（由外到内）：

    Recovery -> CORS -> RequestDeadline -> ContentType -> RequestLogging -> handler

顺序决定了哪一层能看到并标注某个失败：Recovery 在最外层，兜住所有逃出的异常；
RequestLogging 最靠近 handler，负责生成 request_id 和请求级 logger。
"""

import time
from typing import Iterable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse, Response

from query_core.domain.envelopes import envelope_for
from query_core.domain.exceptions import InternalError
from query_core.infrastructure.logging.logger import ContextLogger, get_logger

REQUEST_ID_HEADER = "X-Request-ID"
BODY_METHODS = {"POST", "PUT", "PATCH"}
CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
CORS_HEADERS = [
    "Accept",
    "Content-Type",
    "Content-Length",
    "Accept-Encoding",
    "X-CSRF-Token",
    "Authorization",
    REQUEST_ID_HEADER,
]


def generate_request_id() -> str:
    return uuid4().hex[:16]


def request_logger(request: Request, fallback: ContextLogger) -> ContextLogger:
    return getattr(request.state, "logger", None) or fallback


class RecoveryMiddleware(BaseHTTPMiddleware):
    """兜住 handler 中逃出的任何异常，转成 INTERNAL_ERROR 信封，进程继续服务。"""

    def __init__(self, app, logger: Optional[ContextLogger] = None):
        super().__init__(app)
        self._log = (logger or get_logger()).with_component("recovery_middleware")

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            log = request_logger(request, self._log).with_component("recovery_middleware")
            log.exception(
                "Unhandled error recovered in HTTP handler",
                method=request.method,
                path=request.url.path,
                error=str(e),
            )
            request_id = getattr(request.state, "request_id", "") or generate_request_id()
            envelope = envelope_for(InternalError(details=str(e) or type(e).__name__), request_id)
            return Response(
                content=envelope.to_json(),
                status_code=500,
                media_type="application/json",
                headers={REQUEST_ID_HEADER: request_id},
            )


class RequestDeadlineMiddleware(BaseHTTPMiddleware):
    """为每个请求写入截止时间，由编排层据此取消上游调用。"""

    def __init__(self, app, timeout: float):
        super().__init__(app)
        self._timeout = timeout

    async def dispatch(self, request: Request, call_next):
        request.state.deadline = time.monotonic() + self._timeout
        return await call_next(request)


class ContentTypeMiddleware(BaseHTTPMiddleware):
    """带请求体的方法必须声明允许的 Content-Type，否则返回 415。"""

    def __init__(self, app, allowed: Iterable[str] = ("application/json",), logger: Optional[ContextLogger] = None):
        super().__init__(app)
        self._allowed = {t.lower() for t in allowed}
        self._log = (logger or get_logger()).with_component("content_type_middleware")

    async def dispatch(self, request: Request, call_next):
        if request.method in BODY_METHODS:
            content_type = request.headers.get("content-type", "")
            media_type = content_type.split(";", 1)[0].strip().lower()
            if media_type not in self._allowed:
                self._log.warning(
                    "Invalid content type",
                    received_content_type=content_type,
                    required_content_types=sorted(self._allowed),
                )
                return PlainTextResponse("Unsupported Media Type", status_code=415)
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """生成/透传 request_id，挂载请求级 logger，并记录请求开始与结束。"""

    def __init__(self, app, logger: Optional[ContextLogger] = None):
        super().__init__(app)
        self._log = logger or get_logger()

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        log = self._log.with_request_id(request_id).with_component("http_server")
        start = time.monotonic()

        request.state.request_id = request_id
        request.state.logger = log
        request.state.start_time = start

        log.info(
            "HTTP request started",
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("user-agent", ""),
        )
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        status = response.status_code
        level_fn = log.info
        if status >= 500:
            level_fn = log.error
        elif status >= 400:
            level_fn = log.warning
        level_fn(
            "HTTP request completed",
            status_code=status,
            duration_ms=int((time.monotonic() - start) * 1000),
            response_size_bytes=int(response.headers.get("content-length", 0) or 0),
        )
        return response


def install_middleware(
    app: FastAPI,
    *,
    request_timeout: float,
    cors_origins: Optional[list[str]] = None,
    logger: Optional[ContextLogger] = None,
) -> None:
    """按固定顺序安装中间件。

    Starlette 中后添加的中间件位于外层，所以这里按由内到外的顺序添加。
    """

    app.add_middleware(RequestLoggingMiddleware, logger=logger)
    app.add_middleware(ContentTypeMiddleware, allowed=("application/json",), logger=logger)
    app.add_middleware(RequestDeadlineMiddleware, timeout=request_timeout)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=CORS_METHODS,
        allow_headers=CORS_HEADERS,
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.add_middleware(RecoveryMiddleware, logger=logger)
