"""领域层模型与协议。

包含：
- models: 统一的 Message / CompletionRequest / CompletionResponse / StreamEvent 模型。
- conversation: 会话模型 ChatHistory 及 HistoryStore 抽象。
- exceptions: 业务异常类型定义。
"""
