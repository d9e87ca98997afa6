"""错误信封的序列化模型。

信封字段与线上协议逐字对应：

- ErrorResponse: 400 / 500 使用，error 固定为 "error"。
- ValidationErrorResponse: 422 使用，error 固定为 "validation_error"，
  额外带上 response（不合规的原始输出）。
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from query_core.domain.exceptions import BusinessError, ErrorCode, ValidationFailedError


def rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ErrorResponse:
    """通用错误信封。"""

    message: str
    code: str
    details: str = ""
    error: str = "error"
    timestamp: str = field(default_factory=rfc3339_now)
    request_id: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    def with_context(self, key: str, value: Any) -> "ErrorResponse":
        self.context[key] = value
        return self

    def with_request_id(self, request_id: str) -> "ErrorResponse":
        self.request_id = request_id
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.error,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }
        if self.context:
            payload["context"] = dict(self.context)
        payload["timestamp"] = self.timestamp
        payload["request_id"] = self.request_id
        return payload

    def to_json(self) -> bytes:
        return _dumps(self.to_dict())


@dataclass
class ValidationErrorResponse(ErrorResponse):
    """422 信封：上游成功返回，但内容不满足 schema。"""

    response: bytes = b""
    error: str = "validation_error"
    code: str = ErrorCode.VALIDATION_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return self._ordered(_embed_payload(self.response))

    def to_json(self) -> bytes:
        """序列化信封。

        response 必须与后端输出逐字节一致（数字精度、键顺序都不能变），
        所以先用占位符序列化其余字段，再把占位符替换成原始字节。
        原始输出不是严格 JSON 时退化为字符串。
        """

        if not _is_strict_json(self.response):
            return _dumps(self.to_dict())
        marker = f"__response_{uuid4().hex}__"
        return _dumps(self._ordered(marker)).replace(_dumps(marker), self.response, 1)

    def _ordered(self, response: Any) -> Dict[str, Any]:
        payload = super().to_dict()
        # response 放在 details 之后，与线上格式保持一致
        ordered: Dict[str, Any] = {}
        for key, value in payload.items():
            ordered[key] = value
            if key == "details":
                ordered["response"] = response
        return ordered


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False, allow_nan=False).encode("utf-8")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _is_strict_json(raw: bytes) -> bool:
    if not raw:
        return False
    try:
        json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
    except ValueError:
        return False
    return True


def _embed_payload(raw: bytes) -> Any:
    """把原始输出转成可读的值。能解析就返回解析结果，否则退化为字符串。"""

    if not raw:
        return None
    if _is_strict_json(raw):
        return json.loads(raw)
    return raw.decode("utf-8", errors="replace")


def envelope_for(err: BusinessError, request_id: str) -> ErrorResponse:
    """根据异常类型构造对应的信封。"""

    if isinstance(err, ValidationFailedError):
        return ValidationErrorResponse(
            message=err.message,
            details=err.details,
            response=err.payload,
            request_id=request_id,
        )
    return ErrorResponse(message=err.message, code=err.code, details=err.details).with_request_id(request_id)
