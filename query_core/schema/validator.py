"""JSON Schema 编译与校验。

本模块不自己实现 JSON Schema 语义，而是调度 jsonschema 库：

1. 按内容指纹查缓存，命中直接复用编译结果。
2. 未命中时先做通用 JSON 解析（快速拒绝格式错误），再做元校验并编译。
3. 编译时把文档注册到一个只属于它的 referencing.Registry 中，
   资源 URI 由指纹派生；Registry 不带远程检索，保证同样的字节任何时候
   都编译出同样的行为。
4. 编译期解析文档中的每个 $ref，悬空引用和外部引用都视为无效 schema，
   不会拖到响应校验阶段才暴露。
"""

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match
from jsonschema.protocols import Validator
from jsonschema.validators import validator_for
from referencing import Registry, Resource
from referencing.exceptions import Unresolvable
from referencing.jsonschema import DRAFT202012, specification_with

from query_core.domain.exceptions import InvalidSchemaError, ValidationFailedError
from query_core.infrastructure.logging.logger import ContextLogger, get_logger
from query_core.schema.cache import SchemaCache

SchemaInput = Union[bytes, str]

DEFAULT_CACHE_SIZE = 100
SCHEMA_URI_PREFIX = "urn:llm-json-parse:schema:"


def schema_fingerprint(schema_bytes: bytes) -> str:
    """SHA-256 的前 16 字节（128 bit），十六进制编码。"""

    return hashlib.sha256(schema_bytes).digest()[:16].hex()


@dataclass(frozen=True)
class CompiledSchema:
    """编译后的 schema，创建后不再修改，可被并发请求共享。"""

    fingerprint: str
    uri: str
    validator: Validator


class SchemaValidator:
    """带缓存的 schema 编译器与响应校验器。

    每个实例独占一个 SchemaCache，缓存生命周期与实例相同。
    """

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE, logger: Optional[ContextLogger] = None):
        self._cache: SchemaCache[CompiledSchema] = SchemaCache(cache_size)
        self._log = (logger or get_logger()).with_component("schema_validator")

    @property
    def cache(self) -> SchemaCache[CompiledSchema]:
        return self._cache

    def cache_size(self) -> int:
        return self._cache.size()

    def validate_schema(self, schema: SchemaInput, log: Optional[ContextLogger] = None) -> None:
        """编译（经缓存）并丢弃结果，用于在昂贵调用之前拒绝不可用的 schema。"""

        log = self._scoped(log)
        raw = _as_bytes(schema)
        start = time.perf_counter()
        try:
            self.compile(raw, log=log)
        except InvalidSchemaError as e:
            log.error(
                "Schema validation failed",
                error=e.details,
                duration_ms=_ms_since(start),
                schema_size_bytes=len(raw),
            )
            raise
        log.debug("Schema validation successful", duration_ms=_ms_since(start), schema_size_bytes=len(raw))

    def validate_response(self, schema: SchemaInput, payload: bytes, log: Optional[ContextLogger] = None) -> None:
        """检查 payload 是否符合 schema。

        Raises:
            InvalidSchemaError: schema 本身无法编译。
            ValidationFailedError: payload 不是合法 JSON（reason="invalid_json"），
                或不满足 schema（reason="non_conforming"）。
        """

        log = self._scoped(log)
        raw = _as_bytes(schema)
        start = time.perf_counter()
        compiled = self.compile(raw, log=log)

        parse_start = time.perf_counter()
        try:
            document = json.loads(payload)
        except ValueError as e:
            log.error(
                "Failed to parse response JSON",
                error=str(e),
                duration_ms=_ms_since(parse_start),
                response_size_bytes=len(payload),
            )
            raise ValidationFailedError(f"invalid response JSON: {e}", payload, reason="invalid_json")
        parse_ms = _ms_since(parse_start)

        validate_start = time.perf_counter()
        try:
            errors = list(compiled.validator.iter_errors(document))
        except Unresolvable as e:
            raise InvalidSchemaError(details=f"unresolvable reference: {e}")
        fields = {
            "response_size_bytes": len(payload),
            "schema_size_bytes": len(raw),
            "parse_duration_ms": parse_ms,
            "validate_duration_ms": _ms_since(validate_start),
            "duration_ms": _ms_since(start),
        }
        if errors:
            details = _describe(errors)
            log.warning("Response validation failed", error=details, validation_success=False, **fields)
            raise ValidationFailedError(f"validation failed: {details}", payload)
        log.debug("Response validation successful", validation_success=True, **fields)

    def compile(self, schema: SchemaInput, log: Optional[ContextLogger] = None) -> CompiledSchema:
        log = self._scoped(log)
        raw = _as_bytes(schema)
        fingerprint = schema_fingerprint(raw)

        cached, found = self._cache.get(fingerprint)
        if found:
            log.debug(
                "Schema retrieved from cache",
                cache_hit=True,
                cache_size=self._cache.size(),
                schema_size_bytes=len(raw),
            )
            return cached

        start = time.perf_counter()
        try:
            document = json.loads(raw, parse_constant=_reject_constant)
        except ValueError as e:
            raise InvalidSchemaError(details=f"invalid JSON: {e}")

        try:
            compiled = self._compile_document(document, fingerprint)
        except InvalidSchemaError as e:
            log.error(
                "Schema compilation failed",
                error=e.details,
                cache_hit=False,
                duration_ms=_ms_since(start),
                schema_size_bytes=len(raw),
            )
            raise

        self._cache.put(fingerprint, compiled)
        log.debug(
            "Schema compiled and cached",
            cache_hit=False,
            cache_size=self._cache.size(),
            duration_ms=_ms_since(start),
            schema_size_bytes=len(raw),
        )
        return compiled

    # ---- 辅助方法 ----

    def _compile_document(self, document: Any, fingerprint: str) -> CompiledSchema:
        if not isinstance(document, (dict, bool)):
            raise InvalidSchemaError(details="compile schema: schema must be a JSON object or boolean")

        cls = validator_for(document, default=Draft202012Validator)
        try:
            cls.check_schema(document)
        except SchemaError as e:
            raise InvalidSchemaError(details=f"compile schema: {e.message}")

        uri = f"{SCHEMA_URI_PREFIX}{fingerprint}"
        dialect = document.get("$schema", "") if isinstance(document, dict) else ""
        resource = specification_with(dialect, default=DRAFT202012).create_resource(document)
        registry = Registry().with_resource(uri, resource).crawl()
        # 与校验时相同的根解析器：根 $id 存在时以它为基准，否则为空 URI
        _resolve_refs(resource, registry.resolver_with_root(resource))
        return CompiledSchema(fingerprint=fingerprint, uri=uri, validator=cls(document, registry=registry))

    def _scoped(self, log: Optional[ContextLogger]) -> ContextLogger:
        if log is None:
            return self._log
        return log.with_component("schema_validator")


def _as_bytes(schema: SchemaInput) -> bytes:
    if isinstance(schema, str):
        return schema.encode("utf-8")
    return bytes(schema)


def _ms_since(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _describe(errors: list) -> str:
    best = best_match(errors)
    text = f"{best.json_path}: {best.message}"
    if len(errors) > 1:
        text += f" (and {len(errors) - 1} more)"
    return text


def _reject_constant(name: str) -> Any:
    # NaN / Infinity 不是合法 JSON，转发给后端会被拒绝
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _resolve_refs(resource: Resource, resolver) -> None:
    """在编译期逐个解析 $ref。

    只沿 schema 位置下行（properties、$defs、items 等），const / enum /
    examples 里的数据不会被当成引用。悬空指针和外部文档都会在这里失败，
    从而在调用后端之前暴露出来。
    """

    contents = resource.contents
    if not isinstance(contents, dict):
        return
    ref = contents.get("$ref")
    if isinstance(ref, str):
        try:
            resolver.lookup(ref)
        except Unresolvable as e:
            raise InvalidSchemaError(details=f"compile schema: unresolvable $ref {ref!r}: {e}")
    for sub in resource.subresources():
        _resolve_refs(sub, resolver.in_subresource(sub))
