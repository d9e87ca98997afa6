"""llama.cpp server（OpenAI 兼容）后端适配器。

本模块负责：

1. 接收对话消息与调用方的 schema 字节。
2. 构造带 response_format=json_schema 指令的 chat/completions 请求，
   schema 字节原样嵌入，不做任何改写。
3. 在请求截止时间内调用 HTTP 接口，并把网络/状态码异常统一包装为 UpstreamError。
4. 取出第一个 choice 的内容，确认它至少是合法 JSON 后返回。

这里不做 schema 符合性检查，那是编排层的职责。
"""

import json
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

from query_core.domain.exceptions import UpstreamError
from query_core.domain.models import Message, RequestContext, ValidatedResponse
from query_core.infrastructure.logging.logger import ContextLogger, get_logger

COMPLETIONS_PATH = "/v1/chat/completions"


class LlamaServerClient:
    """llama-server 客户端实现。

    - name: 后端名称（供日志使用）。
    - send_structured_query: 对外统一调用入口，返回 ValidatedResponse。
    """

    name = "llama-server"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        logger: Optional[ContextLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._log = (logger or get_logger()).with_component("llm_client")
        # 测试时可注入 httpx.MockTransport
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self._base_url}{COMPLETIONS_PATH}"

    async def send_structured_query(
        self,
        ctx: RequestContext,
        messages: List[Message],
        schema: bytes,
    ) -> ValidatedResponse:
        """执行一次结构化查询。

        步骤：
        1. 构造请求体（schema 原样嵌入）。
        2. 以 min(客户端超时, 请求剩余时间) 为超时发送请求。
        3. 检查状态码并解码响应信封。
        4. 校验生成内容是合法 JSON。
        """

        log = (ctx.logger or self._log).with_component("llm_client").with_operation("structured_query")
        start = time.perf_counter()
        body = self._build_body(messages, schema)
        log.info(
            "Sending structured query to LLM",
            url=self.url,
            request_size_bytes=len(body),
            schema_size_bytes=len(schema),
            message_count=len(messages),
        )

        timeout = self._effective_timeout(ctx)
        http_start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport) as client:
                resp = await client.post(
                    self.url,
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            log.error("HTTP request to LLM timed out", error=str(e) or type(e).__name__, duration_ms=_ms_since(http_start))
            raise UpstreamError(details=f"http request: timeout after {timeout:.3f}s", reason="timeout")
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接被拒绝等
            log.error("HTTP request to LLM failed", error=str(e), duration_ms=_ms_since(http_start))
            raise UpstreamError(details=f"http request: {e}", reason="network")
        http_ms = _ms_since(http_start)

        if not resp.is_success:
            log.error("LLM server returned non-success status", status_code=resp.status_code, http_duration_ms=http_ms)
            raise UpstreamError(
                details=f"LLM server returned status {resp.status_code}",
                reason="status",
                upstream_status=resp.status_code,
            )

        content = self._extract_content(resp, log)

        try:
            json.loads(content)
        except ValueError as e:
            log.error("LLM response is not valid JSON", error=str(e), content_length=len(content))
            raise UpstreamError(details=f"non-JSON output: LLM response is not valid JSON: {e}", reason="non_json_output")

        data = content.encode("utf-8")
        log.info(
            "LLM structured query completed successfully",
            response_size_bytes=len(data),
            http_duration_ms=http_ms,
            duration_ms=_ms_since(start),
            llm_success=True,
        )
        return ValidatedResponse(data=data)

    # ---- 辅助方法 ----

    @staticmethod
    def _build_body(messages: List[Message], schema: bytes) -> bytes:
        """构造请求体。

        schema 需要逐字节转发，所以先用占位符序列化其余部分，再把占位符
        替换成原始 schema 文本，避免 json.dumps 重新排版。
        """

        marker = f"__schema_{uuid4().hex}__"
        payload: Dict[str, Any] = {
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "response",
                    "strict": True,
                    "schema": marker,
                },
            },
        }
        text = json.dumps(payload, ensure_ascii=False)
        return text.replace(json.dumps(marker), schema.decode("utf-8"), 1).encode("utf-8")

    def _effective_timeout(self, ctx: RequestContext) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self._timeout
        return max(min(self._timeout, remaining), 0.001)

    @staticmethod
    def _extract_content(resp: httpx.Response, log: ContextLogger) -> str:
        """解码响应信封并取出第一个 choice 的内容。"""

        try:
            data = resp.json()
        except ValueError as e:
            log.error("Failed to decode LLM response", error=str(e))
            raise UpstreamError(details=f"decode response: {e}", reason="decode")
        if not isinstance(data, dict):
            raise UpstreamError(details="decode response: envelope is not an object", reason="decode")

        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices:
            log.error("LLM response contains no choices")
            raise UpstreamError(details="no response choices", reason="no_choices")

        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            log.error("LLM response choice has no text content")
            raise UpstreamError(details="non-JSON output: choice has no text content", reason="non_json_output")
        return content


def _ms_since(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
