"""Schema 编译、缓存与校验。"""

from query_core.schema.cache import SchemaCache
from query_core.schema.validator import CompiledSchema, SchemaValidator, schema_fingerprint

__all__ = ["SchemaCache", "CompiledSchema", "SchemaValidator", "schema_fingerprint"]
