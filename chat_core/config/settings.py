"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：初始化参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
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
    """配置设置（使用 Pydantic）。"""

    # ---- 补全端点 ----
    completion_url: str = Field(
        default="http://localhost:54321/functions/v1/chat-completion",
        description="流式补全端点的完整 URL",
    )
    anon_api_key: Optional[str] = Field(
        default=None,
        description="网关要求的匿名 apikey 头（可选）",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    max_request_tokens: int = Field(
        default=4000,
        ge=1,
        description="单次请求 max_tokens 的上限，实际取 min(模型上限, 本值)",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    default_model: str = Field(default="gpt-4o-mini", description="默认模型 ID")

    # ---- 会话 ----
    title_max_chars: int = Field(default=50, ge=1, description="自动生成标题的最大字符数")

    # ---- 用量 ----
    usage_refresh_interval: float = Field(
        default=300.0,
        ge=5.0,
        description="用量快照定时刷新间隔（秒）",
    )
    daily_warning_remaining: int = Field(
        default=1,
        ge=1,
        description="当日剩余消息数等于该值时需要二次确认",
    )
    monthly_warning_percentage: float = Field(
        default=90.0,
        description="月度 token 用量达到该百分比时需要二次确认",
    )
    monthly_block_percentage: float = Field(
        default=95.0,
        description="月度 token 用量达到该百分比时禁止发送",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("anon_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("monthly_block_percentage")
    @classmethod
    def validate_block_percentage(cls, v: float, info) -> float:
        warn_at = info.data.get("monthly_warning_percentage")
        if warn_at is not None and v < warn_at:
            raise ValueError("monthly_block_percentage must not be below monthly_warning_percentage")
        return v

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


settings = Settings()
