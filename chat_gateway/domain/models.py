"""统一的请求、响应与流式事件模型。

本模块定义了网关内部在不同 Provider 之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant）。
- CompletionRequest: 发给底层 Provider 适配器的完整请求，构建后不可变。
- CompletionResponse: 从 Provider 解析后的统一响应结果。
- StreamEvent: 流式增量事件，每个回合恰好有一个 is_complete=True 的终止事件。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from chat_gateway.tools.definitions import ToolCall, ToolCallDelta, ToolSchema


# 规范消息角色（工具调用通过合成的 assistant 消息回传，不引入 tool 角色）
Role = Literal["system", "user", "assistant"]

ToolChoice = Literal["auto", "none", "required"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=data["role"], content=data.get("content") or "")


@dataclass(frozen=True)
class Usage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CompletionRequest:
    """一次完整的补全请求。

    编排器在每一轮都会重新构建一个 CompletionRequest，原对象不会被修改，
    因此重试或复盘某一轮时可以直接复用。
    """

    messages: Tuple[Message, ...]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    tools: Optional[Tuple[ToolSchema, ...]] = None
    tool_choice: Optional[ToolChoice] = None

    def __post_init__(self) -> None:
        # 允许调用方传入 list，统一冻结为 tuple
        object.__setattr__(self, "messages", tuple(self.messages))
        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(self.tools))
        if not self.messages:
            raise ValueError("CompletionRequest.messages must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        """规范请求的 JSON 形态。"""

        payload: Dict[str, Any] = {"messages": [m.to_dict() for m in self.messages]}
        if self.model is not None:
            payload["modelName"] = self.model
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            payload["maxOutputTokens"] = self.max_output_tokens
        if self.tools:
            payload["tools"] = [t.to_dict() for t in self.tools]
        if self.tool_choice is not None:
            payload["toolChoice"] = self.tool_choice
        return payload


@dataclass
class CompletionResponse:
    """一次补全调用的最终结果。"""

    id: str
    model: str
    content: str
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    tool_calls: Optional[List[ToolCall]] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "modelName": self.model,
            "content": self.content,
            "finishReason": self.finish_reason,
        }
        if self.usage:
            payload["usage"] = self.usage.to_dict()
        if self.tool_calls:
            payload["toolCalls"] = [
                {"name": c.name, "argumentsJSON": c.arguments, "id": c.id} for c in self.tool_calls
            ]
        return payload


@dataclass
class StreamEvent:
    """流式事件。

    - 非终止事件：content_delta 和/或 tool_call_deltas 携带增量。
    - 成功的终止事件：is_complete=True，response 为本回合隐含的最终响应，
      content_delta 为空。
    - 中止的终止事件：is_complete=True 且 error 非空。
    """

    model: str = ""
    content_delta: str = ""
    tool_call_deltas: Optional[List[ToolCallDelta]] = None
    is_complete: bool = False
    finish_reason: Optional[str] = None
    id: Optional[str] = None
    usage: Optional[Usage] = None
    response: Optional[CompletionResponse] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.error is not None
