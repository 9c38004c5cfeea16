"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 适配器协议与公共 HTTP 实现 (base)。
- 上游字节流的记录切分 (streaming)。
- 维护 Provider 与模型目录 (catalog)。
- 提供两种线协议的具体实现 (anthropic_client、openai_client)。
- 按名称管理适配器实例 (registry)。
"""

from typing import Optional

from chat_gateway.config.settings import GatewaySettings
from chat_gateway.domain.exceptions import BusinessError, ConfigurationError
from chat_gateway.infrastructure.logging.logger import get_logger
from chat_gateway.providers.anthropic_client import AnthropicClient
from chat_gateway.providers.base import CancelToken, ModelListing, ProviderAdapter
from chat_gateway.providers.catalog import PROVIDER_CATALOG
from chat_gateway.providers.openai_client import OpenAICompatibleClient
from chat_gateway.providers.registry import ProviderRegistry

_log = get_logger("providers")


def create_provider(name: str, settings: GatewaySettings) -> ProviderAdapter:
    """根据名称和配置创建一个适配器实例。"""

    provider_name = name.lower()
    timeouts = {"connect_timeout": settings.connect_timeout, "read_timeout": settings.read_timeout}
    if provider_name == "anthropic":
        return AnthropicClient(
            settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            default_model=settings.anthropic_default_model,
            api_version=settings.anthropic_version,
            **timeouts,
        )
    if provider_name in ("groq", "openai"):
        return OpenAICompatibleClient(
            getattr(settings, f"{provider_name}_api_key"),
            name=provider_name,
            base_url=getattr(settings, f"{provider_name}_base_url"),
            default_model=getattr(settings, f"{provider_name}_default_model"),
            **timeouts,
        )
    raise ConfigurationError(f"Unknown provider: {name!r}", provider=name)


def build_registry(settings: GatewaySettings, registry: Optional[ProviderRegistry] = None) -> ProviderRegistry:
    """按目录顺序注册所有已配置 API Key 的 Provider。

    缺少 Key 的 Provider 只记 WARNING；构造失败记 ERROR，都不会中断启动。
    settings.default_provider 指定的 Provider 注册为默认。
    """

    if registry is None:
        registry = ProviderRegistry()
    for name in PROVIDER_CATALOG:
        if not getattr(settings, f"{name}_api_key", None):
            _log.warning("Provider skipped, API key not configured", extra={"extra": {"provider": name}})
            continue
        try:
            adapter = create_provider(name, settings)
        except BusinessError as e:
            _log.error(
                "Provider construction failed",
                extra={"extra": {"provider": name, "code": e.code, "error": e.message}},
            )
            continue
        registry.register(name, adapter, is_default=(name == settings.default_provider))

    if settings.default_provider and not registry.has(settings.default_provider):
        _log.warning(
            "Configured default provider is not available",
            extra={"extra": {"provider": settings.default_provider, "registered": registry.names()}},
        )
    return registry


__all__ = [
    "AnthropicClient",
    "CancelToken",
    "ModelListing",
    "OpenAICompatibleClient",
    "ProviderAdapter",
    "ProviderRegistry",
    "build_registry",
    "create_provider",
]
