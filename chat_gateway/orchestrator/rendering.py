"""工具回合的文本渲染。

两种线协议都只接受 system/user/assistant 文本消息，
因此工具调用与结果以合成的 assistant 文本写回对话。
"""

import json
from typing import List, Sequence

from chat_gateway.tools.definitions import ToolCall, ToolResult

TOOL_RESULTS_HEADER = "Tool results:\n"


def render_tool_calls(text: str, calls: Sequence[ToolCall]) -> str:
    """模型本轮的文本加上它请求的工具调用。"""

    lines: List[str] = [text] if text else []
    for call in calls:
        lines.append(f"[tool call] {call.name}({call.arguments})")
    return "\n".join(lines)


def render_tool_results(results: Sequence[ToolResult]) -> str:
    payload = [r.to_payload() for r in results]
    return TOOL_RESULTS_HEADER + json.dumps(payload, indent=2, ensure_ascii=False, default=str)
