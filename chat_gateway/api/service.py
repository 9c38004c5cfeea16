"""对外 API 服务模块。

ChatService 把配置、Provider 注册表、会话存储、工具分发器和编排器串起来，
提供以普通 dict / SSE 字符串为返回值的简化接口，供上层 HTTP 框架或脚本调用。
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from chat_gateway.config.settings import GatewaySettings, settings as default_settings
from chat_gateway.domain.conversation import ChatHistory, HistoryStore
from chat_gateway.domain.exceptions import BusinessError, NotFoundError, ValidationError
from chat_gateway.domain.models import Message
from chat_gateway.infrastructure.logging.logger import get_logger
from chat_gateway.infrastructure.storage.json_store import JsonHistoryStore
from chat_gateway.orchestrator.engine import CompletionOrchestrator, OrchestratorConfig, TurnRequest
from chat_gateway.orchestrator.sse import iter_sse
from chat_gateway.prompts import load_system_prompt
from chat_gateway.providers import build_registry
from chat_gateway.providers.base import CancelToken
from chat_gateway.providers.registry import ProviderRegistry
from chat_gateway.tools.dispatch import ToolDispatcher, ToolProvider

logger = get_logger("api")


class ChatService:
    def __init__(
        self,
        orchestrator: CompletionOrchestrator,
        registry: ProviderRegistry,
        store: HistoryStore,
    ):
        self._orchestrator = orchestrator
        self._registry = registry
        self._store = store

    # ---- 对话 ----

    def run_chat(
        self,
        content: str,
        conversation_id: Optional[str] = None,
        provider_name: Optional[str] = None,
        model_name: Optional[str] = None,
        owner_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        **options: Any,
    ) -> Dict[str, Any]:
        """运行一次阻塞对话。

        Returns:
            成功时包含 conversationId、message（最终回复）、toolRounds、toolResults；
            失败时返回 BusinessError.to_dict() 结构化错误对象。
        """

        request = TurnRequest(
            content=content,
            conversation_id=conversation_id,
            provider_name=provider_name,
            model_name=model_name,
            owner_id=owner_id,
            **options,
        )
        try:
            result = self._orchestrator.send(request, cancel=cancel)
        except BusinessError as e:
            logger.error(
                f"Chat failed: {e.message}",
                extra={"extra": {"conversation_id": conversation_id, "code": e.code}},
            )
            return e.to_dict()
        return {
            "conversationId": result.conversation.id,
            "message": result.response.to_dict(),
            "toolRounds": result.tool_rounds,
            "toolResults": [r.to_payload() for r in result.tool_results],
        }

    def stream_chat_sse(
        self,
        content: str,
        conversation_id: Optional[str] = None,
        provider_name: Optional[str] = None,
        model_name: Optional[str] = None,
        owner_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        **options: Any,
    ) -> Iterator[str]:
        """运行一次流式对话，逐条产出 `data: <json>\\n\\n` 文本。"""

        request = TurnRequest(
            content=content,
            conversation_id=conversation_id,
            provider_name=provider_name,
            model_name=model_name,
            owner_id=owner_id,
            **options,
        )
        return iter_sse(self._orchestrator.stream(request, cancel=cancel))

    # ---- 会话管理 ----

    def create_conversation(
        self,
        display_name: str = "New Chat",
        owner_id: Optional[str] = None,
        system_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        conversation = ChatHistory.new(display_name=display_name, owner_id=owner_id, system_prompt=system_message)
        self._store.save(conversation)
        logger.info("Created conversation", extra={"extra": {"conversation_id": conversation.id, "owner_id": owner_id}})
        return conversation.to_dict()

    def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        return self._require(conversation_id).to_dict()

    def list_conversations(self, owner_id: str) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self._store.get_by_owner(owner_id)]

    def rename_conversation(self, conversation_id: str, display_name: str) -> Dict[str, Any]:
        if not (display_name or "").strip():
            raise ValidationError("Display name must not be empty")
        conversation = self._require(conversation_id)
        conversation.display_name = display_name.strip()
        conversation.updated_at = datetime.now(timezone.utc)
        self._store.save(conversation)
        return conversation.to_dict()

    def delete_conversation(self, conversation_id: str) -> bool:
        deleted = self._store.delete(conversation_id)
        if deleted:
            logger.info("Deleted conversation", extra={"extra": {"conversation_id": conversation_id}})
        return deleted

    def delete_conversations(self, owner_id: str) -> bool:
        return self._store.delete_by_owner(owner_id)

    def import_conversations(self, items: Sequence[Dict[str, Any]]) -> int:
        """批量导入会话（to_dict 的 JSON 形态），返回导入数量。"""

        try:
            conversations = [ChatHistory.from_dict(item) for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid conversation payload: {e}")
        self._store.save_many(conversations)
        return len(conversations)

    def append_system_message(self, conversation_id: str, content: str) -> Dict[str, Any]:
        """为已有会话补充一条 system 消息（已存在时不重复添加）。"""

        conversation = self._require(conversation_id)
        if not conversation.has_system_message():
            conversation.messages.insert(0, Message(role="system", content=content))
            conversation.updated_at = datetime.now(timezone.utc)
            self._store.save(conversation)
        return conversation.to_dict()

    # ---- Provider ----

    def list_providers(self) -> Dict[str, Any]:
        return {"providers": self._registry.names(), "default": self._registry.default_name}

    def list_models(self, provider_name: Optional[str] = None) -> Dict[str, Any]:
        adapter = self._registry.resolve(provider_name) if provider_name else self._registry.resolve_default()
        return adapter.list_models().to_dict()

    def _require(self, conversation_id: str) -> ChatHistory:
        conversation = self._store.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(
                f"Chat with ID {conversation_id} not found",
                code="CONVERSATION_NOT_FOUND",
                conversation_id=conversation_id,
            )
        return conversation


def create_default_service(
    settings: Optional[GatewaySettings] = None,
    store: Optional[HistoryStore] = None,
    tool_provider: Optional[ToolProvider] = None,
    registry: Optional[ProviderRegistry] = None,
) -> ChatService:
    """按配置组装一个 ChatService。"""

    cfg = settings or default_settings
    if registry is None:
        registry = build_registry(cfg)
    if store is None:
        store = JsonHistoryStore(root=cfg.storage_root)
    dispatcher = (
        ToolDispatcher.from_provider(tool_provider, max_workers=cfg.tool_parallelism)
        if tool_provider is not None
        else None
    )
    orchestrator = CompletionOrchestrator(
        registry=registry,
        store=store,
        dispatcher=dispatcher,
        config=OrchestratorConfig(
            max_tool_rounds=cfg.max_tool_rounds,
            system_prompt=cfg.system_prompt or load_system_prompt(locale=cfg.prompt_locale),
            temperature=cfg.default_temperature,
            max_output_tokens=cfg.default_max_output_tokens,
            tool_parallelism=cfg.tool_parallelism,
        ),
    )
    logger.info(
        "Chat service ready",
        extra={"extra": {"providers": registry.names(), "default": registry.default_name}},
    )
    return ChatService(orchestrator=orchestrator, registry=registry, store=store)
