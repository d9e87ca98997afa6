"""HTTP 入口。

路由：
- POST /v1/validated-query  校验 - 调用 - 校验 流水线
- GET  /health              存活探针
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from query_core.api.middleware import generate_request_id, install_middleware, request_logger
from query_core.api.service import build_orchestrator
from query_core.config.settings import Settings, settings
from query_core.domain.models import RequestContext
from query_core.flows.validated_query import ENDPOINT, ValidatedQueryOrchestrator
from query_core.infrastructure.logging.logger import ContextLogger, get_logger


def create_app(
    orchestrator: Optional[ValidatedQueryOrchestrator] = None,
    cfg: Optional[Settings] = None,
    logger: Optional[ContextLogger] = None,
) -> FastAPI:
    """创建 FastAPI 应用。orchestrator 可注入，便于测试替换后端。"""

    cfg = cfg or settings
    log = logger or get_logger()
    orchestrator = orchestrator or build_orchestrator(cfg, log)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Starting LLM JSON Parse Server", **cfg.startup_summary())
        yield
        log.info("Server shutdown", cache_size=orchestrator.validator.cache_size())

    app = FastAPI(title="llm-json-parse", lifespan=lifespan, docs_url=None, redoc_url=None)

    @app.post(ENDPOINT)
    async def validated_query(request: Request) -> Response:
        body = await request.body()
        ctx = RequestContext(
            request_id=getattr(request.state, "request_id", None) or generate_request_id(),
            logger=request_logger(request, log),
            deadline=getattr(request.state, "deadline", None),
        )
        outcome = await orchestrator.handle(ctx, body)
        return Response(
            content=outcome.body,
            status_code=outcome.status_code,
            media_type=outcome.media_type,
            headers=outcome.headers,
        )

    @app.get("/health")
    async def health() -> PlainTextResponse:
        return PlainTextResponse("OK")

    install_middleware(
        app,
        request_timeout=cfg.request_timeout,
        cors_origins=cfg.cors_origins_list,
        logger=log,
    )
    return app
