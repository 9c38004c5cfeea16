"""工具定义与分发。

- definitions: ToolSchema / ToolCall / ToolResult 等数据结构。
- dispatch: ToolDispatcher、ToolProvider 协议与本地 FunctionToolProvider。
"""
