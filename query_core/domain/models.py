"""统一的请求与结果数据模型。

- Message: 一条对话消息（role/content），原样转发给后端。
- ValidatedQueryRequest: 入站信封 {"schema": ..., "messages": [...]} 的解析模型。
- ValidatedResponse: 后端返回的原始 JSON 输出，校验前后都以字节形式携带。
- RequestContext: 单个请求的不可变上下文（request_id / logger / 截止时间）。
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from query_core.domain.exceptions import InvalidRequestError, InvalidSchemaError


class Message(BaseModel):
    role: str
    content: str

    model_config = ConfigDict(extra="ignore")


class ValidatedQueryRequest(BaseModel):
    """入站请求信封。

    schema 字段与 BaseModel 的属性同名，因此内部命名为 json_schema，
    通过 alias 映射。解析时另外保留 schema 成员在请求体中的原始文本，
    指纹、校验和转发都使用这份字节，不做重新序列化。
    """

    json_schema: Any = Field(alias="schema")
    messages: List[Message] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    _schema_raw: Optional[bytes] = PrivateAttr(default=None)

    @classmethod
    def decode(cls, body: bytes) -> "ValidatedQueryRequest":
        """解析原始请求体，任何格式问题都归为 InvalidRequestError。"""

        try:
            request = cls.model_validate_json(body)
        except ValidationError as e:
            raise InvalidRequestError(details=_summarize(e))
        try:
            members = _raw_members(body.decode("utf-8"))
        except ValueError as e:
            raise InvalidRequestError(details=f"body: {e}")
        # populate_by_name 也接受 json_schema 作为成员名，此时退化为重新序列化
        if "schema" in members:
            request._schema_raw = members["schema"].encode("utf-8")
        return request

    def schema_bytes(self) -> bytes:
        """schema 的原始字节；直接构造的实例退化为紧凑序列化（保持键顺序）。"""

        if self._schema_raw is not None:
            return self._schema_raw
        try:
            text = json.dumps(self.json_schema, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
        except ValueError as e:
            raise InvalidSchemaError(details=f"invalid JSON: {e}")
        return text.encode("utf-8")


def _skip_ws(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in " \t\n\r":
        idx += 1
    return idx


def _raw_members(text: str) -> Dict[str, str]:
    """把顶层 JSON 对象拆成 成员名 -> 原始值文本。

    值的边界由 json.JSONDecoder.raw_decode 确定，切片保留原始写法
    （数字精度、空白、转义都不变）。重复的成员名以最后一次为准。
    """

    decoder = json.JSONDecoder()
    members: Dict[str, str] = {}
    idx = _skip_ws(text, 0)
    if not text.startswith("{", idx):
        raise ValueError("expected a JSON object")
    idx = _skip_ws(text, idx + 1)
    if text.startswith("}", idx):
        return members
    while True:
        key, idx = decoder.raw_decode(text, idx)
        idx = _skip_ws(text, idx)
        if not isinstance(key, str) or not text.startswith(":", idx):
            raise ValueError(f"malformed object member at offset {idx}")
        start = _skip_ws(text, idx + 1)
        _, end = decoder.raw_decode(text, start)
        members[key] = text[start:end]
        idx = _skip_ws(text, end)
        if text.startswith(",", idx):
            idx = _skip_ws(text, idx + 1)
            continue
        if text.startswith("}", idx):
            return members
        raise ValueError(f"expected ',' or '}}' at offset {idx}")


def _summarize(err: ValidationError) -> str:
    parts = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "body"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


@dataclass
class ValidatedResponse:
    """后端生成的原始 JSON 输出。"""

    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class RequestContext:
    """单个请求在调用链中向下传递的上下文。

    - request_id: 关联 ID，写入日志与错误信封。
    - logger: 已绑定 request_id 的 ContextLogger。
    - deadline: time.monotonic() 时间点；None 表示不限时。
    """

    request_id: str
    logger: Any = None
    deadline: Optional[float] = None
    started_at: float = field(default_factory=time.monotonic)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
