"""校验 - 调用 - 校验 流水线。

状态迁移：

    RECEIVED -> SCHEMA_CHECKED -> DISPATCHED -> RESPONSE_CHECKED -> COMPLETED

任一步失败都进入 FAILED，并且只产生一个分类明确的错误。
schema 校验一定发生在调用后端之前：不可用的 schema 不会触发昂贵的上游调用。
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from query_core.domain.envelopes import envelope_for
from query_core.domain.exceptions import (
    BusinessError,
    InternalError,
    RequestTimeoutError,
    UpstreamError,
    ValidationFailedError,
)
from query_core.domain.models import RequestContext, ValidatedQueryRequest, ValidatedResponse
from query_core.infrastructure.logging.logger import ContextLogger, get_logger
from query_core.providers.base import QueryDispatcher
from query_core.schema.validator import SchemaValidator

ENDPOINT = "/v1/validated-query"


class QueryState(str, Enum):
    RECEIVED = "received"
    SCHEMA_CHECKED = "schema_checked"
    DISPATCHED = "dispatched"
    RESPONSE_CHECKED = "response_checked"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueryOutcome:
    """一次请求的最终结果，直接映射为 HTTP 响应。

    成功时 body 是后端输出的原始字节（不重新序列化、不调整键顺序）；
    失败时 body 是错误信封的 JSON。
    """

    state: QueryState
    status_code: int
    body: bytes
    request_id: str
    error: Optional[BusinessError] = None
    headers: Dict[str, str] = field(default_factory=dict)
    media_type: str = "application/json"

    @property
    def ok(self) -> bool:
        return self.state is QueryState.COMPLETED


class ValidatedQueryOrchestrator:
    """串联 SchemaValidator 与 QueryDispatcher，并把所有结果映射为稳定的响应。

    跨请求共享的只有 validator 持有的 schema 缓存。
    """

    def __init__(
        self,
        validator: SchemaValidator,
        dispatcher: QueryDispatcher,
        logger: Optional[ContextLogger] = None,
    ):
        self._validator = validator
        self._dispatcher = dispatcher
        self._log = (logger or get_logger()).with_component("orchestrator")

    @property
    def validator(self) -> SchemaValidator:
        return self._validator

    async def handle(self, ctx: RequestContext, body: bytes) -> QueryOutcome:
        """处理一个原始请求体，任何异常都不会逃出本方法。"""

        log = (ctx.logger or self._log).with_component("orchestrator").with_request_id(ctx.request_id)
        state = QueryState.RECEIVED
        try:
            # 1. 解析入站信封
            request = ValidatedQueryRequest.decode(body)
            schema = request.schema_bytes()

            # 2. schema 校验必须先于任何上游调用
            # 在线程池中编译，不占用事件循环
            await asyncio.to_thread(self._validator.validate_schema, schema, log=log)
            state = QueryState.SCHEMA_CHECKED

            # 3. 在截止时间内调用后端
            response = await self._dispatch(ctx, request, schema, log)
            state = QueryState.DISPATCHED

            # 4. 用同一份 schema 校验输出
            await asyncio.to_thread(self._validator.validate_response, schema, response.data, log=log)
            state = QueryState.RESPONSE_CHECKED
        except BusinessError as e:
            return self._failed(ctx, log, state, e)
        except Exception as e:
            log.exception("Unexpected error in validated query pipeline", state=state.value)
            return self._failed(ctx, log, state, InternalError(details=str(e) or type(e).__name__))

        log.info(
            "Validated query completed",
            state=QueryState.COMPLETED.value,
            response_size_bytes=response.size,
            duration_ms=ctx.elapsed_ms(),
        )
        return QueryOutcome(
            state=QueryState.COMPLETED,
            status_code=200,
            body=response.data,
            request_id=ctx.request_id,
            headers={"X-Request-ID": ctx.request_id},
        )

    async def _dispatch(
        self,
        ctx: RequestContext,
        request: ValidatedQueryRequest,
        schema: bytes,
        log: ContextLogger,
    ) -> ValidatedResponse:
        remaining = ctx.remaining()
        if remaining is not None and remaining <= 0:
            raise RequestTimeoutError(details="deadline exceeded before dispatch")
        try:
            # wait_for 超时会取消上游调用协程
            return await asyncio.wait_for(
                self._dispatcher.send_structured_query(ctx, request.messages, schema),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            raise RequestTimeoutError(details=f"deadline exceeded while waiting for {self._dispatcher.name}")
        except UpstreamError as e:
            if ctx.expired():
                raise RequestTimeoutError(details=f"deadline exceeded: {e.details}")
            raise
        except BusinessError:
            raise
        except Exception as e:
            log.exception("Dispatcher raised unexpected error")
            raise UpstreamError(details=str(e) or type(e).__name__, reason="dispatcher")

    def _failed(self, ctx: RequestContext, log: ContextLogger, state: QueryState, err: BusinessError) -> QueryOutcome:
        envelope = envelope_for(err, ctx.request_id)
        if isinstance(err, ValidationFailedError):
            envelope.with_context("endpoint", ENDPOINT)
        level_fn = log.error if err.http_status >= 500 else log.warning
        level_fn(
            err.message,
            state=QueryState.FAILED.value,
            failed_after=state.value,
            code=err.code,
            details=err.details,
            duration_ms=ctx.elapsed_ms(),
            **err.extra,
        )
        return QueryOutcome(
            state=QueryState.FAILED,
            status_code=err.http_status,
            body=envelope.to_json(),
            request_id=ctx.request_id,
            error=err,
            headers={"X-Request-ID": ctx.request_id},
        )
