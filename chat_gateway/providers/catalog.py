"""Provider 与模型的静态目录。

集中维护各厂商的基础 URL、已知模型及其上下文窗口大小，
适配器用它回答 context_window / list_models（在无法在线获取时）。
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping


@dataclass(frozen=True)
class ModelConfig:
    """单个厂商模型的配置。"""

    name: str
    context_window: int


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]
    default_context_window: int

    def model_names(self) -> List[str]:
        return list(self.models)

    def context_window(self, model: str) -> int:
        cfg = self.models.get(model)
        return cfg.context_window if cfg else self.default_context_window


def _models(pairs: Mapping[str, int]) -> Dict[str, ModelConfig]:
    return {name: ModelConfig(name=name, context_window=size) for name, size in pairs.items()}


ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    base_url="https://api.anthropic.com/v1",
    models=_models(
        {
            "claude-3-7-sonnet-20250219": 200000,
            "claude-3-5-sonnet-20241022": 200000,
            "claude-3-5-haiku-20241022": 200000,
            "claude-3-opus-20240229": 200000,
            "claude-3-haiku-20240307": 200000,
        }
    ),
    default_context_window=200000,
)

GROQ_CONFIG = ProviderConfig(
    name="groq",
    base_url="https://api.groq.com/openai/v1",
    models=_models(
        {
            "llama3-70b-8192": 8192,
            "llama3-8b-8192": 8192,
            "llama-3.3-70b-versatile": 128000,
            "mixtral-8x7b-32768": 32768,
            "gemma2-9b-it": 8192,
        }
    ),
    default_context_window=8192,
)

OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models=_models(
        {
            "gpt-4o": 128000,
            "gpt-4o-mini": 128000,
            "gpt-4-turbo": 128000,
        }
    ),
    default_context_window=128000,
)


PROVIDER_CATALOG: Mapping[str, ProviderConfig] = {
    "anthropic": ANTHROPIC_CONFIG,
    "groq": GROQ_CONFIG,
    "openai": OPENAI_CONFIG,
}
