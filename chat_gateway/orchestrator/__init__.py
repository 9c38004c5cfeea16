"""补全编排层：回合状态机、流式累积、工具回合渲染与 SSE 编码。"""

from chat_gateway.orchestrator.engine import (
    CompletionOrchestrator,
    OrchestratorConfig,
    TurnRequest,
    TurnResult,
    TurnState,
)

__all__ = [
    "CompletionOrchestrator",
    "OrchestratorConfig",
    "TurnRequest",
    "TurnResult",
    "TurnState",
]
