"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
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
    explicit = os.getenv("GATEWAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
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


class GatewaySettings(BaseSettings):
    """网关配置（使用 Pydantic）。"""

    # ---- Provider 选择 ----
    default_provider: Optional[str] = Field(
        default=None,
        description="默认 Provider 名称，例如 anthropic、groq；为空时取第一个注册成功的 Provider",
    )

    # Anthropic（事件流格式）
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Anthropic API 基础URL",
    )
    anthropic_default_model: str = Field(default="claude-3-7-sonnet-20250219")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")

    # Groq（OpenAI 兼容格式）
    groq_api_key: Optional[str] = Field(default=None, description="Groq API 密钥")
    groq_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        description="Groq API 基础URL",
    )
    groq_default_model: str = Field(default="llama3-70b-8192")

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    openai_default_model: str = Field(default="gpt-4o-mini")

    # ---- 网络 ----
    connect_timeout: float = Field(default=5.0, gt=0, description="建立连接超时（秒）")
    read_timeout: float = Field(default=30.0, gt=0, description="单次读取超时（秒）")

    # ---- 对话 ----
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_output_tokens: int = Field(default=4000, ge=1)
    max_tool_rounds: int = Field(
        default=8,
        ge=1,
        le=20,
        description="单轮对话内工具调用最大轮数（硬上限 20）",
    )
    tool_parallelism: int = Field(default=4, ge=1, le=32, description="同一批工具调用的最大并发数")
    prompt_locale: str = Field(default="en", description="系统提示词语言目录")
    system_prompt: Optional[str] = Field(default=None, description="覆盖默认系统提示词")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO")
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

    @field_validator("anthropic_api_key", "groq_api_key", "openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("default_provider")
    @classmethod
    def normalize_provider(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v and v.strip() else None

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


settings = GatewaySettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = GatewaySettings
