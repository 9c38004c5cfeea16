"""把编排器事件编码为面向调用方的 SSE 文本。

每个事件一条 `data: <json>\\n\\n`：

- 增量:   {"id", "content", "isComplete": false, "model", "toolCalls"?}
- 终止:   {"id", "content": "", "isComplete": true, "finishReason", "usage"?}
- 出错:   {"error": true, "message", "code"}，之后流结束。
"""

import json
from typing import Any, Dict, Iterable, Iterator

from chat_gateway.domain.exceptions import BusinessError
from chat_gateway.domain.models import StreamEvent


def _frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def encode_event(event: StreamEvent) -> str:
    if event.is_error:
        return encode_error_payload(event.error or "", event.error_code or "INTERNAL_ERROR")
    if event.is_complete:
        payload: Dict[str, Any] = {
            "id": event.id,
            "content": "",
            "isComplete": True,
            "finishReason": event.finish_reason or "stop",
        }
        if event.usage:
            payload["usage"] = event.usage.to_dict()
        conversation_id = event.meta.get("conversation_id")
        if conversation_id:
            payload["conversationId"] = conversation_id
        return _frame(payload)
    payload = {
        "id": event.id,
        "content": event.content_delta,
        "isComplete": False,
        "model": event.model,
    }
    if event.tool_call_deltas:
        payload["toolCalls"] = [d.to_dict() for d in event.tool_call_deltas]
    return _frame(payload)


def encode_error_payload(message: str, code: str) -> str:
    return _frame({"error": True, "message": message, "code": code})


def encode_error(error: BusinessError) -> str:
    return encode_error_payload(error.message, error.code)


def iter_sse(events: Iterable[StreamEvent]) -> Iterator[str]:
    """逐个编码事件；遇到终止事件（成功或出错）后停止。"""

    for event in events:
        yield encode_event(event)
        if event.is_complete or event.is_error:
            return
