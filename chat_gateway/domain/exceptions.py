"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在服务层统一捕获，并通过 to_dict() 转成结构化错误对象返回给调用方。

分类：
- 配置/参数：ConfigurationError、ValidationError。
- 注册表：NotFoundError、NoProviderError。
- 上游：ProtocolError、UpstreamError（含 RateLimitError）、UpstreamTimeoutError、NetworkError。
- 工具：UnknownToolError、ToolArgumentsError、ToolExecutionError，
  只在工具分发边界内部使用，最终都会转换成 ToolResult.error。
- 回合：ToolLoopExceededError、TurnCancelledError。
"""

from typing import Any, Dict, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为对外的结构化错误对象（与流式错误事件字段一致）。"""

        payload: Dict[str, Any] = {"error": True, "code": self.code, "message": self.message}
        payload.update({k: v for k, v in self.extra.items() if v is not None})
        return payload


class ConfigurationError(BusinessError):
    """缺少凭据或模型等构造期配置。"""

    def __init__(self, message: str, code: str = "CONFIGURATION_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=500, **extra)


class ValidationError(BusinessError):
    """参数或输入校验失败。"""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=400, **extra)


class NotFoundError(BusinessError):
    """按名称/ID 查找不到目标（Provider、会话等）。"""

    def __init__(self, message: str, code: str = "NOT_FOUND", **extra):
        super().__init__(code=code, message=message, http_status=404, **extra)


class NoProviderError(BusinessError):
    """注册表为空，无法选出默认 Provider。"""

    def __init__(self, message: str = "No AI provider has been registered", **extra):
        super().__init__(code="NO_PROVIDER", message=message, http_status=503, **extra)


class ProtocolError(BusinessError):
    """上游响应无法解析：空响应体、零条有效记录等。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="PROTOCOL_ERROR", message=message, http_status=502, **extra)


class UpstreamError(BusinessError):
    """上游返回非 2xx 状态码。status/body 原样保留给调用方。"""

    def __init__(
        self,
        status: Optional[int],
        body: str,
        message: Optional[str] = None,
        code: str = "UPSTREAM_ERROR",
        http_status: int = 502,
        **extra,
    ):
        self.status = status
        self.body = body
        super().__init__(
            code=code,
            message=message or f"Upstream error ({status}): {body}",
            http_status=http_status,
            status=status,
            body=body,
            **extra,
        )


class RateLimitError(UpstreamError):
    """Provider 限流（HTTP 429），由上层决定是否重试/退避。"""

    def __init__(self, body: str, **extra):
        super().__init__(status=429, body=body, code="RATE_LIMIT", http_status=429, **extra)


class UpstreamTimeoutError(BusinessError):
    """连接或读取上游超时。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="UPSTREAM_TIMEOUT", message=message, http_status=504, **extra)


class NetworkError(BusinessError):
    """网络层错误，例如 DNS 失败、连接被拒绝。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="NETWORK_ERROR", message=message, http_status=502, **extra)


class UnknownToolError(BusinessError):
    """模型请求了未注册的工具。"""

    def __init__(self, name: str):
        super().__init__(code="UNKNOWN_TOOL", message=f"unknown tool: {name}", tool=name)


class ToolArgumentsError(BusinessError):
    """工具参数无法解析或不符合 schema。"""

    def __init__(self, name: str, detail: str):
        super().__init__(
            code="INVALID_TOOL_ARGUMENTS",
            message=f"invalid arguments for {name}: {detail}",
            tool=name,
        )


class ToolExecutionError(BusinessError):
    """工具处理函数内部失败。"""

    def __init__(self, name: str, detail: str):
        super().__init__(code="TOOL_EXECUTION_ERROR", message=f"tool {name} failed: {detail}", tool=name)


class ToolLoopExceededError(BusinessError):
    """工具调用轮数超过上限，整轮对话中止。"""

    def __init__(self, max_rounds: int, **extra):
        self.max_rounds = max_rounds
        super().__init__(
            code="TOOL_LOOP_EXCEEDED",
            message=f"Tool call loop exceeded {max_rounds} rounds",
            http_status=500,
            max_rounds=max_rounds,
            **extra,
        )


class TurnCancelledError(BusinessError):
    """调用方取消了进行中的回合。"""

    def __init__(self, message: str = "Turn cancelled by caller", **extra):
        super().__init__(code="TURN_CANCELLED", message=message, http_status=499, **extra)
