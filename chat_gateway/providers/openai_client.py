"""OpenAI 兼容 Provider 适配器（增量 delta 格式）。

Groq、OpenAI 以及其他 /chat/completions 兼容服务共用这一个实现，
差异只在 name / base_url / 默认模型 / 目录配置。

本模块负责：

1. 将 CompletionRequest 转换为 chat/completions 请求（Bearer 鉴权）。
2. 非流式响应：choices[0].message 的 content 与 tool_calls。
3. 流式响应：choices[0].delta.content 为正文增量，
   choices[0].delta.tool_calls 为工具调用片段；finish_reason 先记下，
   直到 [DONE] 或流结束才产出终止事件，避免丢失最后单独下发的 usage。
4. list_models：GET /models，失败时退回目录并标记 degraded。
"""

import json
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from chat_gateway.domain.exceptions import BusinessError, ProtocolError, UpstreamError
from chat_gateway.domain.models import CompletionRequest, CompletionResponse, StreamEvent, Usage
from chat_gateway.providers.base import CancelToken, HttpProviderBase, ModelListing, as_list, as_object
from chat_gateway.providers.catalog import GROQ_CONFIG, PROVIDER_CATALOG, ProviderConfig
from chat_gateway.tools.definitions import ToolCall, ToolCallDelta, ToolSchema


class OpenAICompatibleClient(HttpProviderBase):
    """chat/completions 兼容客户端。

    - name: 注册名，同时决定默认使用的目录配置（groq / openai）。
    - supports_tools: 部分兼容服务不支持 function calling，可在构造时关闭。
    """

    def __init__(
        self,
        api_key: Optional[str],
        name: str = "groq",
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        config: Optional[ProviderConfig] = None,
        supports_tools: bool = True,
    ):
        self.name = name
        self.config = config or PROVIDER_CATALOG.get(name, GROQ_CONFIG)
        self.supports_tools = supports_tools
        super().__init__(
            api_key,
            base_url=base_url,
            default_model=default_model or next(iter(self.config.models), None),
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        payload = self._build_payload(request, stream=False)
        data = self._request_json("POST", "chat/completions", payload)
        return self._parse_response(data, request)

    def stream(self, request: CompletionRequest, cancel: Optional[CancelToken] = None) -> Iterator[StreamEvent]:
        payload = self._build_payload(request, stream=True)
        model = self._model_for(request)
        response_id: Optional[str] = None
        finish_reason: Optional[str] = None
        usage: Optional[Usage] = None

        for record in self._stream_records("chat/completions", payload, cancel):
            if record.done:
                break
            chunk = record.payload
            if isinstance(chunk, dict) and chunk.get("error"):
                err = chunk["error"]
                message = err.get("message") if isinstance(err, dict) else str(err)
                raise UpstreamError(
                    status=None,
                    body=record.raw,
                    message=f"{self.name} stream error: {message}",
                    provider=self.name,
                )
            try:
                chunk = as_object(chunk, "stream record")
                chunk_usage = self._parse_usage(chunk)
                choices = as_list(chunk.get("choices"), "choices")
                choice = as_object(choices[0], "choice") if choices else {}
                delta = as_object(choice.get("delta"), "delta")
                deltas = self._parse_tool_call_deltas(delta.get("tool_calls"))
            except ProtocolError as e:
                self._log.warning(
                    "Ignoring malformed stream record",
                    extra={"extra": {"provider": self.name, "error": e.message, "record": record.raw[:200]}},
                )
                continue

            response_id = chunk.get("id") or response_id
            model = chunk.get("model") or model
            usage = chunk_usage or usage
            if not choices:
                continue
            finish_reason = choice.get("finish_reason") or finish_reason
            text = delta.get("content") or ""
            if text or deltas:
                yield StreamEvent(
                    id=response_id,
                    model=model,
                    content_delta=text,
                    tool_call_deltas=deltas or None,
                )

        if cancel is not None and cancel.cancelled:
            return
        yield StreamEvent(
            id=response_id,
            model=model,
            is_complete=True,
            finish_reason=finish_reason or "stop",
            usage=usage,
        )

    def list_models(self) -> ModelListing:
        try:
            data = self._request_json("GET", "models")
        except BusinessError as e:
            self._log.warning(
                "Model listing failed, using catalog",
                extra={"extra": {"provider": self.name, "code": e.code, "error": e.message}},
            )
            return ModelListing(
                provider=self.name,
                models=self.config.model_names(),
                status="degraded",
                reason=e.message,
            )
        models = [m.get("id") for m in data.get("data") or [] if isinstance(m, dict) and m.get("id")]
        return ModelListing(provider=self.name, models=models)

    # ---- 辅助方法 ----

    def _build_payload(self, req: CompletionRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._model_for(req),
            "messages": [m.to_dict() for m in req.messages],
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.max_output_tokens is not None:
            payload["max_tokens"] = req.max_output_tokens
        if req.tools:
            payload["tools"] = [self._serialize_tool(t) for t in req.tools]
            if req.tool_choice:
                payload["tool_choice"] = req.tool_choice
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolSchema) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }

    @staticmethod
    def _parse_usage(data: Dict[str, Any]) -> Optional[Usage]:
        # Groq 在流式最后一块的 x_groq.usage 里返回统计
        raw = as_object(data.get("usage"), "usage") or as_object(
            as_object(data.get("x_groq"), "x_groq").get("usage"), "x_groq.usage"
        )
        if not raw:
            return None
        prompt = raw.get("prompt_tokens", 0) or 0
        completion = raw.get("completion_tokens", 0) or 0
        return Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=raw.get("total_tokens") or prompt + completion,
        )

    @staticmethod
    def _parse_tool_call_deltas(raw: Any) -> List[ToolCallDelta]:
        deltas: List[ToolCallDelta] = []
        for pos, call in enumerate(as_list(raw, "tool_calls")):
            call = as_object(call, "tool call")
            func = as_object(call.get("function"), "function")
            deltas.append(
                ToolCallDelta(
                    index=call.get("index", pos),
                    id=call.get("id"),
                    name=func.get("name"),
                    arguments_fragment=func.get("arguments") or "",
                )
            )
        return deltas

    def _parse_response(self, data: Dict[str, Any], req: CompletionRequest) -> CompletionResponse:
        choices = as_list(data.get("choices"), "choices", provider=self.name)
        if not choices:
            raise ProtocolError(f"{self.name} response has no choices", provider=self.name)
        choice = as_object(choices[0], "choice", provider=self.name)
        msg = as_object(choice.get("message"), "message", provider=self.name)
        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(as_list(msg.get("tool_calls"), "tool_calls", provider=self.name)):
            call = as_object(call, "tool call", provider=self.name)
            func = as_object(call.get("function"), "function", provider=self.name)
            arguments = func.get("arguments")
            if isinstance(arguments, dict):
                arguments = json.dumps(arguments, ensure_ascii=False)
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or "",
                    arguments=arguments or "{}",
                )
            )
        usage = self._parse_usage(data)
        if usage:
            self._log.info(
                "Token usage",
                extra={"extra": {"provider": self.name, "model": data.get("model"), **usage.to_dict()}},
            )
        return CompletionResponse(
            id=data.get("id") or f"chatcmpl-{uuid4().hex}",
            model=data.get("model") or self._model_for(req),
            content=msg.get("content") or "",
            finish_reason=choice.get("finish_reason"),
            usage=usage,
            tool_calls=tool_calls or None,
        )
