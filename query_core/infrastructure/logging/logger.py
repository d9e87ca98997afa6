import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from query_core.config.settings import settings

LOGGER_NAME = "query_core"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

# LoggerAdapter 透传给 Logger._log 的关键字参数，其余都视为结构化字段
_RESERVED_KWARGS = {"exc_info", "stack_info", "stacklevel", "extra"}


def parse_level(level: str) -> int:
    return _LEVELS.get((level or "").lower(), logging.INFO)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = f"{ts} {record.levelname} {record.name} {record.getMessage()}"
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra:
            line += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """携带结构化上下文的 logger。

    每次 with_* 都返回新的实例，原实例不变，因此可以安全地在并发请求间共享。
    日志调用上的额外关键字参数会被合并进结构化字段::

        log = ContextLogger(logger).with_component("schema_validator")
        log.info("Schema compiled", cache_size=3)
    """

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(fields or {}))

    def with_fields(self, **fields: Any) -> "ContextLogger":
        merged = dict(self.extra)
        merged.update(fields)
        return ContextLogger(self.logger, merged)

    def with_component(self, component: str) -> "ContextLogger":
        return self.with_fields(component=component)

    def with_operation(self, operation: str) -> "ContextLogger":
        return self.with_fields(operation=operation)

    def with_request_id(self, request_id: str) -> "ContextLogger":
        return self.with_fields(request_id=request_id)

    def process(self, msg, kwargs):
        payload = dict(self.extra)
        for key in list(kwargs):
            if key not in _RESERVED_KWARGS:
                payload[key] = kwargs.pop(key)
        extra = dict(kwargs.get("extra") or {})
        extra["extra"] = payload
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logger(
    level: str = "info",
    fmt: str = "json",
    stream: Optional[TextIO] = None,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """配置 query_core logger，可重复调用（会替换已有 handler）。"""

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(parse_level(level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = TextFormatter() if fmt == "text" else JsonFormatter()
    sh = logging.StreamHandler(stream or sys.stdout)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path / "query_core.log", encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    return logger


def get_logger(**fields: Any) -> ContextLogger:
    return ContextLogger(logging.getLogger(LOGGER_NAME), fields)


logger = setup_logger(settings.log_level, settings.log_format, log_dir=settings.log_dir)
