"""生成后端的抽象接口。

编排层不直接依赖具体后端的 HTTP 协议，而是依赖此协议：

- 每种后端实现一个 QueryDispatcher（如 LlamaServerClient）。
- 负责：把对话与 schema 指令转成具体 API 请求，并返回原始 JSON 输出。
- 只保证输出是语法合法的 JSON；是否符合 schema 由编排层通过 SchemaValidator 判断。

测试替身只需实现同一个方法即可替换生产实现。
"""

from typing import List, Protocol

from query_core.domain.models import Message, RequestContext, ValidatedResponse


class QueryDispatcher(Protocol):
    """结构化查询后端协议。"""

    name: str

    async def send_structured_query(
        self,
        ctx: RequestContext,
        messages: List[Message],
        schema: bytes,
    ) -> ValidatedResponse:
        ...
