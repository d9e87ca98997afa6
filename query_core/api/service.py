"""服务装配模块。

按配置组装编排器：一个独占缓存的 SchemaValidator 加一个生成后端。
"""

from typing import Optional

from query_core.config.settings import Settings, settings
from query_core.flows.validated_query import ValidatedQueryOrchestrator
from query_core.infrastructure.logging.logger import ContextLogger, get_logger
from query_core.providers import create_dispatcher
from query_core.schema.validator import SchemaValidator


def build_orchestrator(
    cfg: Optional[Settings] = None,
    logger: Optional[ContextLogger] = None,
) -> ValidatedQueryOrchestrator:
    cfg = cfg or settings
    log = logger or get_logger()
    validator = SchemaValidator(cache_size=cfg.schema_cache_size, logger=log)
    dispatcher = create_dispatcher(cfg, logger=log)
    return ValidatedQueryOrchestrator(validator, dispatcher, logger=log)
