"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
核心组件只消费这里解析好的值，从不关心加载方式。
"""

import os
import re
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


VALID_LOG_LEVELS = ("debug", "info", "warn", "warning", "error", "fatal")
VALID_LOG_FORMATS = ("json", "text")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """把 "500ms" / "30s" / "2m" / 12 之类的值统一转成秒。"""

    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit]


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("QUERY_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """服务配置。"""

    # ---- HTTP 服务 ----
    host: str = Field(default="", description="监听地址，空字符串表示所有网卡")
    port: int = Field(default=8081, ge=1, le=65535, description="监听端口")
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices("request_timeout", "write_timeout"),
        description="单个请求的截止时间（秒），超时后取消上游调用",
    )
    idle_timeout: float = Field(default=120.0, gt=0, description="keep-alive 空闲超时（秒）")
    cors_origins: str = Field(default="*", description="允许的跨域来源，逗号分隔")

    # ---- 生成后端 ----
    llm_server_url: str = Field(default="http://localhost:8080", description="后端基础 URL")
    llm_timeout: float = Field(default=30.0, gt=0, description="后端 HTTP 超时（秒）")

    # ---- Schema 缓存 ----
    schema_cache_size: int = Field(default=100, ge=1, description="编译后 schema 的缓存容量")

    # ---- 日志 ----
    log_level: str = Field(default="info", description="日志级别")
    log_format: str = Field(default="json", description="日志格式：json 或 text")
    log_dir: Optional[str] = Field(default=None, description="日志目录，未设置时只输出到 stdout")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("request_timeout", "idle_timeout", "llm_timeout", mode="before")
    @classmethod
    def validate_duration(cls, v: Any) -> float:
        return parse_duration(v)

    @field_validator("llm_server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("LLM server URL cannot be empty")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = (v or "").lower()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log level must be one of {list(VALID_LOG_LEVELS)}, got {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = (v or "").lower()
        if fmt not in VALID_LOG_FORMATS:
            raise ValueError(f"log format must be one of {list(VALID_LOG_FORMATS)}, got {v}")
        return fmt

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def startup_summary(self) -> Dict[str, Any]:
        """启动日志中输出的配置摘要。"""

        return {
            "address": self.address(),
            "llm_server": self.llm_server_url,
            "llm_timeout_s": self.llm_timeout,
            "cache_size": self.schema_cache_size,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "request_timeout_s": self.request_timeout,
            "idle_timeout_s": self.idle_timeout,
        }


settings = Settings()
