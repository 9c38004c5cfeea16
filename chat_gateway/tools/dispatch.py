"""工具分发绑定。

ToolDispatcher 把模型发起的工具调用路由到处理函数，并保证：

- dispatch 永不抛异常，所有失败都转成带 error 的 ToolResult，
  交由编排器原样回传给模型。
- 参数先按 JSON 解析，再按工具的 JSON schema 做基本校验
  （必填、未知参数、基础类型、enum）。
- dispatch_all 可以在线程池中并发执行一批调用，结果按调用声明顺序返回。
"""

import json
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from chat_gateway.domain.exceptions import (
    BusinessError,
    ToolArgumentsError,
    ToolExecutionError,
    UnknownToolError,
)
from chat_gateway.infrastructure.logging.logger import get_logger
from chat_gateway.tools.definitions import DegradedResult, ToolCall, ToolResult, ToolSchema


ToolHandler = Callable[[Dict[str, Any]], Any]

_JSON_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
    "null": (type(None),),
}


class ToolProvider(Protocol):
    """外部工具提供方协议。"""

    def list_schemas(self) -> List[ToolSchema]:
        ...

    def dispatch(self, name: str, arguments_json: str) -> ToolResult:
        ...


def _type_matches(value: Any, expected: str) -> bool:
    types = _JSON_TYPES.get(expected)
    if types is None:
        return True
    # bool 是 int 的子类，需要单独排除
    if expected in ("integer", "number") and isinstance(value, bool):
        return False
    return isinstance(value, types)


def validate_arguments(schema: ToolSchema, args: Dict[str, Any]) -> Optional[str]:
    """按工具 schema 校验参数，返回第一条错误描述；通过时返回 None。"""

    params = schema.parameters or {}
    properties: Dict[str, Any] = params.get("properties") or {}
    required: Sequence[str] = params.get("required") or []

    missing = [name for name in required if name not in args]
    if missing:
        return f"missing required parameter(s): {', '.join(missing)}"

    if properties and params.get("additionalProperties", False) is False:
        unexpected = sorted(set(args) - set(properties))
        if unexpected:
            return f"unexpected parameter(s): {', '.join(unexpected)}"

    for name, value in args.items():
        prop = properties.get(name)
        if not isinstance(prop, dict):
            continue
        expected = prop.get("type")
        if isinstance(expected, str) and not _type_matches(value, expected):
            return f"parameter '{name}' must be of type {expected}, got {type(value).__name__}"
        if isinstance(expected, list) and not any(_type_matches(value, t) for t in expected):
            return f"parameter '{name}' must be one of types {expected}, got {type(value).__name__}"
        enum = prop.get("enum")
        if enum is not None and value not in enum:
            return f"parameter '{name}' must be one of {enum}"
    return None


class ToolDispatcher:
    def __init__(self, max_workers: int = 4):
        self._handlers: Dict[str, ToolHandler] = {}
        self._schemas: Dict[str, ToolSchema] = {}
        self._max_workers = max(1, max_workers)
        self._log = get_logger("tools.dispatch")

    def register(self, schema: ToolSchema, handler: ToolHandler) -> None:
        if schema.name in self._handlers:
            self._log.warning("Tool already registered, replacing", extra={"extra": {"tool": schema.name}})
        self._schemas[schema.name] = schema
        self._handlers[schema.name] = handler

    def list_schemas(self) -> List[ToolSchema]:
        return list(self._schemas.values())

    def has(self, name: str) -> bool:
        return name in self._handlers

    def dispatch(self, name: str, arguments_json: str, call_id: Optional[str] = None) -> ToolResult:
        try:
            value = self._invoke(name, arguments_json)
        except BusinessError as e:
            self._log.warning(
                "Tool dispatch failed",
                extra={"extra": {"tool": name, "code": e.code, "error": e.message}},
            )
            return ToolResult(tool_name=name, error=e.message, call_id=call_id)
        if isinstance(value, DegradedResult):
            self._log.info("Tool returned degraded result", extra={"extra": {"tool": name, "reason": value.reason}})
            return ToolResult(tool_name=name, result=value.value, call_id=call_id, degraded=True, note=value.reason)
        # 没有返回值的处理函数同样算成功，result 保持 None
        return ToolResult(tool_name=name, result=value, call_id=call_id)

    def dispatch_all(self, calls: Sequence[ToolCall], max_workers: Optional[int] = None) -> List[ToolResult]:
        """执行一批工具调用，返回顺序与 calls 一致。"""

        if not calls:
            return []
        workers = max(1, min(max_workers or self._max_workers, len(calls)))
        if workers == 1:
            return [self.dispatch(c.name, c.arguments, call_id=c.id) for c in calls]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.dispatch, c.name, c.arguments, c.id) for c in calls]
            return [f.result() for f in futures]

    def _invoke(self, name: str, arguments_json: str) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownToolError(name)
        try:
            args = json.loads(arguments_json) if (arguments_json or "").strip() else {}
        except json.JSONDecodeError as e:
            raise ToolArgumentsError(name, f"malformed JSON ({e.msg})")
        if not isinstance(args, dict):
            raise ToolArgumentsError(name, "arguments must be a JSON object")
        problem = validate_arguments(self._schemas[name], args)
        if problem:
            raise ToolArgumentsError(name, problem)
        try:
            return handler(args)
        except BusinessError:
            raise
        except Exception as e:
            # 处理函数内部的任何异常都只影响本次调用
            raise ToolExecutionError(name, str(e) or type(e).__name__)

    @classmethod
    def from_provider(cls, provider: ToolProvider, max_workers: int = 4) -> "ToolDispatcher":
        """把外部 ToolProvider 绑定为分发器。"""

        dispatcher = cls(max_workers=max_workers)
        for schema in provider.list_schemas():
            dispatcher.register(schema, _forwarding_handler(provider, schema.name))
        return dispatcher


class _ProviderToolFailure(BusinessError):
    """外部 ToolProvider 报告的失败，错误文本原样保留。"""

    def __init__(self, name: str, message: str):
        super().__init__(code="TOOL_EXECUTION_ERROR", message=message, tool=name)


def _forwarding_handler(provider: ToolProvider, name: str) -> ToolHandler:
    def _run(args: Dict[str, Any]) -> Any:
        result = provider.dispatch(name, json.dumps(args, ensure_ascii=False))
        if result.error is not None:
            raise _ProviderToolFailure(name, result.error)
        if result.degraded:
            return DegradedResult(value=result.result, reason=result.note or "degraded")
        return result.result

    return _run


class FunctionToolProvider:
    """由本地 Python 函数组成的 ToolProvider。"""

    def __init__(self, tools: Optional[Sequence[Tuple[ToolSchema, ToolHandler]]] = None):
        self._tools: Dict[str, Tuple[ToolSchema, ToolHandler]] = {}
        for schema, handler in tools or ():
            self.add(schema, handler)

    def add(self, schema: ToolSchema, handler: ToolHandler) -> None:
        self._tools[schema.name] = (schema, handler)

    def list_schemas(self) -> List[ToolSchema]:
        return [schema for schema, _ in self._tools.values()]

    def dispatch(self, name: str, arguments_json: str) -> ToolResult:
        entry = self._tools.get(name)
        if entry is None:
            return ToolResult(tool_name=name, error=f"unknown tool: {name}")
        _, handler = entry
        try:
            args = json.loads(arguments_json or "{}")
        except json.JSONDecodeError as e:
            return ToolResult(tool_name=name, error=f"invalid arguments for {name}: {e.msg}")
        try:
            value = handler(args)
        except Exception as e:
            return ToolResult(tool_name=name, error=str(e) or type(e).__name__)
        if isinstance(value, DegradedResult):
            return ToolResult(tool_name=name, result=value.value, degraded=True, note=value.reason)
        return ToolResult(tool_name=name, result=value)
