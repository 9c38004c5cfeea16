"""补全编排器核心模块。

一个回合（turn）的状态流转：

    IDLE → BUILDING → DISPATCHING → BLOCKING|STREAMING
         → TOOL_PENDING（0..N 次，回到 DISPATCHING）→ FINALIZING → IDLE

- BUILDING: 读取或新建会话，拼出本回合的消息列表（必要时补系统提示词）。
- DISPATCHING: 解析 Provider 适配器，构造不可变的 CompletionRequest。
- BLOCKING/STREAMING: 调用适配器；流式模式下边转发增量边累积。
- TOOL_PENDING: 模型请求了工具，分发执行后把调用与结果作为 assistant 文本追加，
  超过 max_tool_rounds 时整回合中止。
- FINALIZING: 只在不含工具调用的响应之后发生，会话在这里写入存储，且只写一次。

任何上游错误、轮数超限或存储失败都会中止回合，不修改历史；
工具自身的失败不会中止回合，而是作为结果回传给模型。
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from chat_gateway.domain.conversation import ChatHistory, HistoryStore
from chat_gateway.domain.exceptions import (
    BusinessError,
    NotFoundError,
    ToolLoopExceededError,
    TurnCancelledError,
    ValidationError,
)
from chat_gateway.domain.models import CompletionRequest, CompletionResponse, Message, StreamEvent, ToolChoice, Usage
from chat_gateway.infrastructure.logging.logger import get_logger
from chat_gateway.orchestrator.accumulator import StreamAccumulator
from chat_gateway.orchestrator.rendering import render_tool_calls, render_tool_results
from chat_gateway.providers.base import CancelToken, ProviderAdapter
from chat_gateway.providers.registry import ProviderRegistry
from chat_gateway.tools.definitions import ToolCall, ToolResult, ToolSchema
from chat_gateway.tools.dispatch import ToolDispatcher

logger = get_logger("orchestrator")


class TurnState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    DISPATCHING = "dispatching"
    BLOCKING = "blocking"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    FINALIZING = "finalizing"


@dataclass
class OrchestratorConfig:
    max_tool_rounds: int = 8  # 单回合内工具调用的最大轮数
    system_prompt: Optional[str] = None
    temperature: float = 0.7
    max_output_tokens: int = 4000
    tool_choice: ToolChoice = "auto"
    tool_parallelism: int = 4


@dataclass
class TurnRequest:
    """调用方发起的一次用户回合。

    conversation_id 为空时新建会话；provider_name / model_name 为空时使用默认值。
    tools 不为 None 时覆盖分发器提供的工具列表（传空列表表示本回合禁用工具）。
    """

    content: str
    conversation_id: Optional[str] = None
    provider_name: Optional[str] = None
    model_name: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    tools: Optional[Sequence[ToolSchema]] = None
    tool_choice: Optional[ToolChoice] = None
    owner_id: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class TurnResult:
    conversation: ChatHistory
    response: CompletionResponse
    tool_rounds: int = 0
    tool_results: List[ToolResult] = field(default_factory=list)


@dataclass
class _Turn:
    """单个回合的工作状态，只在编排器内部使用。"""

    conversation: ChatHistory
    history: Tuple[Message, ...]
    user_message: Message
    adapter: ProviderAdapter
    model: str
    working: Tuple[Message, ...] = ()
    state: TurnState = TurnState.IDLE
    transcript: List[str] = field(default_factory=list)
    tool_rounds: int = 0
    tool_results: List[ToolResult] = field(default_factory=list)
    usage: Optional[Usage] = None


class CompletionOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: HistoryStore,
        dispatcher: Optional[ToolDispatcher] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self._registry = registry
        self._store = store
        self._dispatcher = dispatcher
        self._config = config or OrchestratorConfig()

    # ---- 对外入口 ----

    def send(self, request: TurnRequest, cancel: Optional[CancelToken] = None) -> TurnResult:
        """阻塞模式执行一个回合，失败时抛出对应的 BusinessError。

        cancel 在每次调用适配器之前检查，已取消时抛 TurnCancelledError，历史不变。
        """

        start_time = time.time()
        log_ctx = self._new_log_ctx(request)
        try:
            turn = self._build(request, log_ctx)
            while True:
                if self._cancelled(cancel, log_ctx):
                    raise TurnCancelledError(conversation_id=turn.conversation.id, tool_rounds=turn.tool_rounds)
                creq = self._dispatch_request(turn, request, log_ctx)
                self._transition(turn, TurnState.BLOCKING, log_ctx)
                response = turn.adapter.complete(creq)
                self._record_round(turn, response)
                if response.has_tool_calls:
                    self._tool_round(turn, response, log_ctx)
                    continue
                result = self._finalize(turn, response, log_ctx)
                break
        except BusinessError as e:
            self._log(logging.ERROR, "Turn aborted", log_ctx, code=e.code, error=e.message)
            raise
        self._log(
            logging.INFO,
            "Completed turn",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            tool_rounds=result.tool_rounds,
        )
        return result

    def stream(self, request: TurnRequest, cancel: Optional[CancelToken] = None) -> Iterator[StreamEvent]:
        """流式执行一个回合。

        适配器的非终止事件立即转发；适配器自己的终止事件被吞掉，
        整个回合结束时只产出一个终止事件（成功时携带 response，失败时携带 error）。
        被取消后不再产出任何事件，也不写入历史。
        """

        start_time = time.time()
        log_ctx = self._new_log_ctx(request)
        try:
            turn = self._build(request, log_ctx)
            while True:
                if self._cancelled(cancel, log_ctx):
                    return
                creq = self._dispatch_request(turn, request, log_ctx)
                self._transition(turn, TurnState.STREAMING, log_ctx)
                acc = StreamAccumulator(model=creq.model or turn.model)
                events = turn.adapter.stream(creq, cancel)
                try:
                    for event in events:
                        if cancel is not None and cancel.cancelled:
                            break
                        acc.feed(event)
                        if event.is_complete:
                            continue
                        yield event
                finally:
                    close = getattr(events, "close", None)
                    if close is not None:
                        close()
                if self._cancelled(cancel, log_ctx):
                    return

                response = acc.to_response(fallback_id=f"resp-{uuid4().hex}")
                self._record_round(turn, response)
                if response.has_tool_calls:
                    piece = self._tool_round(turn, response, log_ctx)
                    yield StreamEvent(
                        id=response.id,
                        model=response.model,
                        content_delta=piece,
                        meta={"kind": "tool_results", "round": turn.tool_rounds},
                    )
                    continue

                result = self._finalize(turn, response, log_ctx)
                final = result.response
                self._log(
                    logging.INFO,
                    "Completed streaming turn",
                    log_ctx,
                    elapsed_seconds=round(time.time() - start_time, 2),
                    tool_rounds=result.tool_rounds,
                )
                yield StreamEvent(
                    id=final.id,
                    model=final.model,
                    is_complete=True,
                    finish_reason=final.finish_reason or "stop",
                    usage=final.usage,
                    response=final,
                    meta={"conversation_id": result.conversation.id},
                )
                return
        except BusinessError as e:
            self._log(logging.ERROR, "Streaming turn aborted", log_ctx, code=e.code, error=e.message)
            yield self._error_event(e)
        except Exception as e:
            # 流一旦开始就只能以终止事件收尾，非预期异常同样转成错误事件
            logger.exception("Streaming turn failed unexpectedly", extra={"extra": dict(log_ctx)})
            yield self._error_event(
                BusinessError(code="INTERNAL_ERROR", message=f"{type(e).__name__}: {e}", http_status=500)
            )

    # ---- 状态处理 ----

    def _build(self, request: TurnRequest, log_ctx: Dict[str, Any]) -> _Turn:
        if not (request.content or "").strip():
            raise ValidationError("Message content must not be empty")

        if request.conversation_id:
            conversation = self._store.get_by_id(request.conversation_id)
            if conversation is None:
                raise NotFoundError(
                    f"Chat with ID {request.conversation_id} not found",
                    code="CONVERSATION_NOT_FOUND",
                    conversation_id=request.conversation_id,
                )
        else:
            conversation = ChatHistory.new(
                display_name=request.display_name or "New Chat",
                owner_id=request.owner_id,
            )
            self._log(logging.INFO, "Created new conversation", log_ctx, conversation_id=conversation.id)
        log_ctx["conversation_id"] = conversation.id

        history = tuple(conversation.messages)
        if not conversation.has_system_message() and self._config.system_prompt:
            history = (Message(role="system", content=self._config.system_prompt),) + history

        adapter = (
            self._registry.resolve(request.provider_name)
            if request.provider_name
            else self._registry.resolve_default()
        )
        model = request.model_name or adapter.default_model
        log_ctx.update(provider=adapter.name, model=model)

        user_message = Message(role="user", content=request.content)
        turn = _Turn(
            conversation=conversation,
            history=history,
            user_message=user_message,
            adapter=adapter,
            model=model,
            working=history + (user_message,),
        )
        self._transition(turn, TurnState.BUILDING, log_ctx)

        prompt_tokens = adapter.count_tokens(turn.working)
        window = adapter.context_window(model)
        if prompt_tokens > window:
            self._log(
                logging.WARNING,
                "Prompt may exceed context window",
                log_ctx,
                estimated_tokens=prompt_tokens,
                context_window=window,
            )
        return turn

    def _dispatch_request(self, turn: _Turn, request: TurnRequest, log_ctx: Dict[str, Any]) -> CompletionRequest:
        self._transition(turn, TurnState.DISPATCHING, log_ctx)
        tools: Sequence[ToolSchema]
        if request.tools is not None:
            tools = request.tools
        elif self._dispatcher is not None:
            tools = self._dispatcher.list_schemas()
        else:
            tools = ()
        use_tools = bool(tools) and turn.adapter.supports_tools
        return CompletionRequest(
            messages=turn.working,
            model=turn.model,
            temperature=request.temperature if request.temperature is not None else self._config.temperature,
            max_output_tokens=request.max_output_tokens or self._config.max_output_tokens,
            tools=tuple(tools) if use_tools else None,
            tool_choice=(request.tool_choice or self._config.tool_choice) if use_tools else None,
        )

    def _record_round(self, turn: _Turn, response: CompletionResponse) -> None:
        if response.content:
            turn.transcript.append(response.content)
        turn.usage = _merge_usage(turn.usage, response.usage)

    def _tool_round(self, turn: _Turn, response: CompletionResponse, log_ctx: Dict[str, Any]) -> str:
        """执行一轮工具调用，返回写入回合文本的结果片段。"""

        self._transition(turn, TurnState.TOOL_PENDING, log_ctx)
        calls: List[ToolCall] = list(response.tool_calls or [])
        if turn.tool_rounds >= self._config.max_tool_rounds:
            raise ToolLoopExceededError(self._config.max_tool_rounds, conversation_id=turn.conversation.id)

        self._log(
            logging.INFO,
            "Dispatching tool calls",
            log_ctx,
            round=turn.tool_rounds + 1,
            tools=[c.name for c in calls],
        )
        results = self._run_tools(calls)
        rendered = render_tool_results(results)
        turn.working = turn.working + (
            Message(role="assistant", content=render_tool_calls(response.content, calls)),
            Message(role="assistant", content=rendered),
        )
        turn.tool_rounds += 1
        turn.tool_results.extend(results)

        piece = ("\n\n" if turn.transcript else "") + rendered + "\n\n"
        turn.transcript.append(piece)
        failed = [r.tool_name for r in results if not r.ok]
        if failed:
            self._log(logging.WARNING, "Tool calls failed", log_ctx, tools=failed)
        return piece

    def _run_tools(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        if self._dispatcher is None:
            return [ToolResult(tool_name=c.name, error=f"unknown tool: {c.name}", call_id=c.id) for c in calls]
        return self._dispatcher.dispatch_all(calls, max_workers=self._config.tool_parallelism)

    def _finalize(self, turn: _Turn, response: CompletionResponse, log_ctx: Dict[str, Any]) -> TurnResult:
        self._transition(turn, TurnState.FINALIZING, log_ctx)
        content = "".join(turn.transcript)
        final = CompletionResponse(
            id=response.id,
            model=response.model or turn.model,
            content=content,
            finish_reason=response.finish_reason,
            usage=turn.usage,
        )
        conversation = turn.conversation.copy()
        conversation.messages = list(turn.history) + [
            turn.user_message,
            Message(role="assistant", content=content),
        ]
        conversation.updated_at = datetime.now(timezone.utc)
        conversation.provider_name = turn.adapter.name
        conversation.model_name = final.model
        self._store.save(conversation)
        self._log(
            logging.INFO,
            "Stored conversation",
            log_ctx,
            messages=len(conversation.messages),
            **(final.usage.to_dict() if final.usage else {}),
        )
        self._transition(turn, TurnState.IDLE, log_ctx)
        return TurnResult(
            conversation=conversation,
            response=final,
            tool_rounds=turn.tool_rounds,
            tool_results=list(turn.tool_results),
        )

    # ---- 辅助方法 ----

    def _transition(self, turn: _Turn, state: TurnState, log_ctx: Dict[str, Any]) -> None:
        self._log(logging.DEBUG, "Turn state changed", log_ctx, previous=turn.state.value, state=state.value)
        turn.state = state

    def _cancelled(self, cancel: Optional[CancelToken], log_ctx: Dict[str, Any]) -> bool:
        if cancel is not None and cancel.cancelled:
            self._log(logging.INFO, "Turn cancelled", log_ctx)
            return True
        return False

    @staticmethod
    def _error_event(error: BusinessError) -> StreamEvent:
        return StreamEvent(
            is_complete=True,
            finish_reason="error",
            error=error.message,
            error_code=error.code,
            meta={"error": error.to_dict()},
        )

    @staticmethod
    def _new_log_ctx(request: TurnRequest) -> Dict[str, Any]:
        return {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": request.conversation_id,
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _merge_usage(total: Optional[Usage], extra: Optional[Usage]) -> Optional[Usage]:
    if extra is None:
        return total
    if total is None:
        return extra
    return Usage(
        prompt_tokens=total.prompt_tokens + extra.prompt_tokens,
        completion_tokens=total.completion_tokens + extra.completion_tokens,
        total_tokens=total.total_tokens + extra.total_tokens,
    )
