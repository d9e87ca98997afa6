"""统一业务异常模型。

管道中每一种失败都对应这里的一个异常类型，便于在编排层统一捕获，
再转换成稳定的错误信封（见 domain.envelopes）返回给调用方。
"""


class ErrorCode:
    """对外暴露的机器可读错误码。"""

    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_SCHEMA = "INVALID_SCHEMA"
    LLM_ERROR = "LLM_ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TIMEOUT = "TIMEOUT"


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "INVALID_SCHEMA"）。
        message: 用户可读错误信息。
        details: 底层错误描述，原样写入信封的 details 字段。
        http_status: 映射到 HTTP 时使用的状态码。
        extra: 其他补充字段（例如 upstream_status、reason 等）。
    """

    code = ErrorCode.INTERNAL_ERROR
    default_message = "Internal server error"
    http_status = 500

    def __init__(
        self,
        message: str | None = None,
        details: str = "",
        *,
        code: str | None = None,
        http_status: int | None = None,
        **extra,
    ):
        self.message = message or self.default_message
        self.details = details
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.extra = extra
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class InvalidRequestError(BusinessError):
    """请求信封本身无法解析（非 JSON、缺少字段、类型错误）。"""

    code = ErrorCode.INVALID_REQUEST
    default_message = "Invalid request body"
    http_status = 400


class InvalidSchemaError(BusinessError):
    """调用方提供的 JSON Schema 无法编译或未通过元校验。"""

    code = ErrorCode.INVALID_SCHEMA
    default_message = "Invalid JSON schema"
    http_status = 400


class UpstreamError(BusinessError):
    """生成后端调用失败：网络错误、非 2xx 状态或输出不是 JSON。

    extra 中的 reason 区分具体子类：network / timeout / status /
    decode / no_choices / non_json_output；status 时还会带上 upstream_status。
    """

    code = ErrorCode.LLM_ERROR
    default_message = "LLM service error"
    http_status = 500

    @property
    def reason(self) -> str:
        return self.extra.get("reason", "")

    @property
    def upstream_status(self) -> int | None:
        return self.extra.get("upstream_status")


class ValidationFailedError(BusinessError):
    """后端返回的数据不符合调用方 schema。

    这不是服务端故障：上游调用成功了，只是内容不合规，调用方可以换个
    prompt 重试。payload 保存原始输出，用于写入 422 信封的 response 字段。
    """

    code = ErrorCode.VALIDATION_FAILED
    default_message = "Schema validation failed"
    http_status = 422

    def __init__(self, details: str, payload: bytes = b"", *, reason: str = "non_conforming", **extra):
        super().__init__(details=details, reason=reason, **extra)
        self.payload = payload

    @property
    def reason(self) -> str:
        return self.extra.get("reason", "")


class RequestTimeoutError(BusinessError):
    """请求在截止时间之前没有完成。"""

    code = ErrorCode.TIMEOUT
    default_message = "Request timed out"
    http_status = 500


class InternalError(BusinessError):
    """未预期的内部故障（包括被兜住的异常）。"""
