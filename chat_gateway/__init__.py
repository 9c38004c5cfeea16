"""Chat Gateway 顶层包。

该包提供多 Provider 的 LLM 对话网关核心实现，
包括配置加载、领域模型、Provider 适配与注册、工具分发、
补全编排（含有界工具循环与流式输出）以及会话持久化等能力。
"""

from chat_gateway.api.service import ChatService, create_default_service

__all__ = ["ChatService", "create_default_service"]
