"""Provider 注册表。

按名称维护已构造好的适配器实例，并记住一个默认 Provider：

- 第一个注册的适配器自动成为默认；之后以 is_default=True 注册会改写默认指针。
- 重复名称只记 WARNING，保留第一次注册的实例，默认指针不变。
- 注册在启动期进行，用锁保护；解析只读，可被多个回合并发调用。
"""

import logging
import threading
from typing import Dict, List, Optional

from chat_gateway.domain.exceptions import NoProviderError, NotFoundError
from chat_gateway.infrastructure.logging.logger import get_logger
from chat_gateway.providers.base import ProviderAdapter


class ProviderRegistry:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self._log = logger or get_logger("providers.registry")
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._default: Optional[str] = None
        self._lock = threading.Lock()

    def register(self, name: str, adapter: ProviderAdapter, is_default: bool = False) -> None:
        key = name.lower()
        with self._lock:
            if key in self._adapters:
                self._log.warning(
                    "Provider already registered, ignoring",
                    extra={"extra": {"provider": key}},
                )
                return
            self._adapters[key] = adapter
            if self._default is None or is_default:
                self._default = key
        self._log.info(
            "Provider registered",
            extra={"extra": {"provider": key, "default": self._default == key}},
        )

    def resolve(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name.lower())
        if adapter is None:
            raise NotFoundError(
                f"AI provider '{name}' not found",
                code="PROVIDER_NOT_FOUND",
                provider=name,
            )
        return adapter

    def resolve_default(self) -> ProviderAdapter:
        default = self._default
        if default is None:
            raise NoProviderError()
        return self._adapters[default]

    def set_default(self, name: str) -> None:
        key = name.lower()
        with self._lock:
            if key not in self._adapters:
                raise NotFoundError(
                    f"AI provider '{name}' not found",
                    code="PROVIDER_NOT_FOUND",
                    provider=name,
                )
            self._default = key

    def has(self, name: str) -> bool:
        return name.lower() in self._adapters

    def names(self) -> List[str]:
        """按注册顺序返回所有 Provider 名称。"""

        return list(self._adapters)

    @property
    def default_name(self) -> Optional[str]:
        return self._default

    def __len__(self) -> int:
        return len(self._adapters)
