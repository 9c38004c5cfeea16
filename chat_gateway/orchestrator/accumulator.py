"""流式增量的累积。

适配器逐条产出 StreamEvent，编排器一边转发一边用 StreamAccumulator
拼出本轮的完整文本和工具调用：同一 index 的工具调用片段按到达顺序拼接，
name / id 取第一次出现的非空值。
"""

from typing import Dict, List, Optional

from chat_gateway.domain.models import CompletionResponse, StreamEvent, Usage
from chat_gateway.tools.definitions import ToolCall


class StreamAccumulator:
    def __init__(self, model: str = ""):
        self._texts: List[str] = []
        self._calls: Dict[int, Dict[str, Optional[str]]] = {}
        self.id: Optional[str] = None
        self.model = model
        self.finish_reason: Optional[str] = None
        self.usage: Optional[Usage] = None

    def feed(self, event: StreamEvent) -> None:
        self.id = event.id or self.id
        self.model = event.model or self.model
        if event.content_delta:
            self._texts.append(event.content_delta)
        for delta in event.tool_call_deltas or []:
            entry = self._calls.setdefault(delta.index, {"id": None, "name": None, "arguments": ""})
            if delta.id and not entry["id"]:
                entry["id"] = delta.id
            if delta.name and not entry["name"]:
                entry["name"] = delta.name
            if delta.arguments_fragment:
                entry["arguments"] = (entry["arguments"] or "") + delta.arguments_fragment
        if event.is_complete:
            self.finish_reason = event.finish_reason or self.finish_reason
            self.usage = event.usage or self.usage

    @property
    def text(self) -> str:
        return "".join(self._texts)

    def tool_calls(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for idx in sorted(self._calls):
            entry = self._calls[idx]
            if not entry["name"]:
                continue
            calls.append(
                ToolCall(
                    id=entry["id"] or f"tool_call_{idx}",
                    name=entry["name"],
                    arguments=entry["arguments"] or "{}",
                )
            )
        return calls

    def to_response(self, fallback_id: str) -> CompletionResponse:
        return CompletionResponse(
            id=self.id or fallback_id,
            model=self.model,
            content=self.text,
            finish_reason=self.finish_reason,
            usage=self.usage,
            tool_calls=self.tool_calls() or None,
        )
