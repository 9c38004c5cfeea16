"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolSchema）。
- 在编排器中保存和执行模型触发的工具调用（ToolCall / ToolCallDelta / ToolResult）。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


ResultStatus = Literal["success", "degraded", "failure"]


@dataclass(frozen=True)
class ToolSchema:
    """一个可供 LLM 调用的工具定义。

    parameters 是完整的 JSON schema 对象（type/properties/required）。
    """

    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parametersSchema": self.parameters,
        }


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。

    arguments 保留上游给出的原始 JSON 文本，直到分发前才解析。
    """

    name: str
    arguments: str = "{}"
    id: Optional[str] = None


@dataclass(frozen=True)
class ToolCallDelta:
    """流式响应中的工具调用片段，相同 index 的片段按顺序拼接。"""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_fragment: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"index": self.index, "arguments": self.arguments_fragment}
        if self.id:
            payload["id"] = self.id
        if self.name:
            payload["name"] = self.name
        return payload


@dataclass
class DegradedResult:
    """工具处理函数返回的“降级”结果，例如上游失败时使用了缓存或兜底数据。"""

    value: Any
    reason: str


@dataclass
class ToolResult:
    """工具执行结果。

    成败只看 error：error 为 None 即成功，此时 result 可以是任意可序列化值，
    包括 None（处理函数没有返回值），渲染为 ``"result": null``。
    error 不为 None 时 result 被忽略，渲染结果中只有 error 字段。
    """

    tool_name: str
    result: Any = None
    error: Optional[str] = None
    call_id: Optional[str] = None
    degraded: bool = False
    note: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> ResultStatus:
        if self.error is not None:
            return "failure"
        return "degraded" if self.degraded else "success"

    def to_payload(self) -> Dict[str, Any]:
        """渲染给模型看的结构（写入合成的 assistant 消息）。"""

        payload: Dict[str, Any] = {"tool": self.tool_name, "status": self.status}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        if self.note:
            payload["note"] = self.note
        return payload
