"""Query Core 顶层包。

该包实现带 schema 约束的结构化查询服务：调用方提交 JSON Schema 与对话，
服务先校验 schema，再调用生成后端，最后用同一份 schema 校验输出，
返回符合 schema 的数据或分类明确的错误。
"""

from query_core.api.app import create_app
from query_core.flows.validated_query import ValidatedQueryOrchestrator

__all__ = ["create_app", "ValidatedQueryOrchestrator"]
