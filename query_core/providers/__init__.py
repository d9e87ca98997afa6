"""生成后端集成层。

该包下的模块负责：
- 定义后端抽象接口 (base)。
- 提供具体实现 (llama_client)。
"""

from typing import Optional

from query_core.config.settings import settings
from query_core.infrastructure.logging.logger import ContextLogger
from query_core.providers.base import QueryDispatcher
from query_core.providers.llama_client import LlamaServerClient


def create_dispatcher(cfg=None, logger: Optional[ContextLogger] = None) -> QueryDispatcher:
    """根据配置创建后端实例，默认取全局 settings。"""

    cfg = cfg or settings
    return LlamaServerClient(cfg.llm_server_url, timeout=cfg.llm_timeout, logger=logger)


__all__ = ["QueryDispatcher", "LlamaServerClient", "create_dispatcher"]
