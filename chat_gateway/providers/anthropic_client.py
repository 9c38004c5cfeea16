"""Anthropic Provider 适配器（事件流格式）。

本模块负责：

1. 接收统一的 CompletionRequest，转换为 Messages API 请求：
   system 消息提升为顶层 system 字段，相邻同角色消息合并。
2. 非流式响应：text 块拼接为正文，tool_use 块解析为 ToolCall。
3. 流式响应：按事件类型解析
   - message_start      → 消息 id / 模型 / 输入 token
   - content_block_start → tool_use 块开始（携带 id、name）
   - content_block_delta → text_delta 正文增量 / input_json_delta 参数片段
   - message_delta      → stop_reason、输出 token
   - message_stop       → 终止事件
   - error              → UpstreamError
"""

import json
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from chat_gateway.domain.exceptions import ProtocolError, UpstreamError
from chat_gateway.domain.models import CompletionRequest, CompletionResponse, Message, StreamEvent, Usage
from chat_gateway.providers.base import CancelToken, HttpProviderBase, ModelListing, as_object
from chat_gateway.providers.catalog import ANTHROPIC_CONFIG
from chat_gateway.tools.definitions import ToolCall, ToolCallDelta, ToolSchema

DEFAULT_MAX_TOKENS = 4000

_TOOL_CHOICE = {"auto": "auto", "required": "any", "none": "none"}


class AnthropicClient(HttpProviderBase):
    """Anthropic Messages API 客户端实现。"""

    name = "anthropic"
    supports_tools = True
    config = ANTHROPIC_CONFIG

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        default_model: Optional[str] = "claude-3-7-sonnet-20250219",
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        api_version: str = "2023-06-01",
    ):
        super().__init__(
            api_key,
            base_url=base_url,
            default_model=default_model,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )
        self._api_version = api_version

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "Content-Type": "application/json",
        }

    # ---- 非流式 ----

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        payload = self._build_payload(request, stream=False)
        data = self._request_json("POST", "messages", payload)
        return self._parse_response(data, request)

    # ---- 流式 ----

    def stream(self, request: CompletionRequest, cancel: Optional[CancelToken] = None) -> Iterator[StreamEvent]:
        payload = self._build_payload(request, stream=True)
        model = self._model_for(request)
        message_id: Optional[str] = None
        stop_reason: Optional[str] = None
        input_tokens = 0
        output_tokens = 0
        saw_usage = False

        for record in self._stream_records("messages", payload, cancel):
            if record.done:
                break
            try:
                event = as_object(record.payload, "stream record")
                etype = event.get("type")
                if etype == "message_start":
                    message = as_object(event.get("message"), "message")
                    usage = as_object(message.get("usage"), "usage")
                elif etype == "content_block_start":
                    block = as_object(event.get("content_block"), "content_block")
                elif etype in ("content_block_delta", "message_delta"):
                    delta = as_object(event.get("delta"), "delta")
                    usage = as_object(event.get("usage"), "usage")
                elif etype == "error":
                    err = as_object(event.get("error"), "error")
            except ProtocolError as e:
                self._log.warning(
                    "Ignoring malformed stream record",
                    extra={"extra": {"provider": self.name, "error": e.message, "record": record.raw[:200]}},
                )
                continue

            if etype == "message_start":
                message_id = message.get("id") or message_id
                model = message.get("model") or model
                if usage:
                    saw_usage = True
                    input_tokens = usage.get("input_tokens", 0) or 0
                    output_tokens = usage.get("output_tokens", 0) or 0
            elif etype == "content_block_start":
                if block.get("type") == "tool_use":
                    initial = block.get("input")
                    yield StreamEvent(
                        id=message_id,
                        model=model,
                        tool_call_deltas=[
                            ToolCallDelta(
                                index=event.get("index", 0),
                                id=block.get("id"),
                                name=block.get("name"),
                                arguments_fragment=json.dumps(initial) if initial else "",
                            )
                        ],
                    )
                elif block.get("type") == "text" and block.get("text"):
                    yield StreamEvent(id=message_id, model=model, content_delta=block["text"])
            elif etype == "content_block_delta":
                dtype = delta.get("type")
                if dtype == "text_delta":
                    text = delta.get("text") or ""
                    if text:
                        yield StreamEvent(id=message_id, model=model, content_delta=text)
                elif dtype == "input_json_delta":
                    fragment = delta.get("partial_json") or ""
                    if fragment:
                        yield StreamEvent(
                            id=message_id,
                            model=model,
                            tool_call_deltas=[ToolCallDelta(index=event.get("index", 0), arguments_fragment=fragment)],
                        )
            elif etype == "message_delta":
                stop_reason = delta.get("stop_reason") or stop_reason
                if usage:
                    saw_usage = True
                    output_tokens = usage.get("output_tokens", output_tokens) or 0
            elif etype == "message_stop":
                break
            elif etype == "error":
                raise UpstreamError(
                    status=None,
                    body=json.dumps(err, ensure_ascii=False),
                    message=f"anthropic stream error: {err.get('message') or err.get('type') or 'unknown'}",
                    provider=self.name,
                )
            # ping / content_block_stop 等无需处理

        if cancel is not None and cancel.cancelled:
            return
        usage_obj = (
            Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )
            if saw_usage
            else None
        )
        yield StreamEvent(
            id=message_id,
            model=model,
            is_complete=True,
            finish_reason=stop_reason or "end_turn",
            usage=usage_obj,
        )

    def list_models(self) -> ModelListing:
        # Anthropic 的模型列表以目录为准
        return ModelListing(provider=self.name, models=self.config.model_names())

    # ---- 辅助方法 ----

    def _build_payload(self, req: CompletionRequest, stream: bool) -> Dict[str, Any]:
        system_parts = [m.content for m in req.messages if m.role == "system" and m.content]
        payload: Dict[str, Any] = {
            "model": self._model_for(req),
            "messages": self._convert_messages([m for m in req.messages if m.role != "system"]),
            "max_tokens": req.max_output_tokens or DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.tools:
            payload["tools"] = [self._serialize_tool(t) for t in req.tools]
            if req.tool_choice:
                payload["tool_choice"] = {"type": _TOOL_CHOICE.get(req.tool_choice, "auto")}
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _convert_messages(messages: List[Message]) -> List[Dict[str, str]]:
        """相邻同角色消息合并（合成的工具结果消息会紧跟在 assistant 消息之后）。"""

        converted: List[Dict[str, str]] = []
        for msg in messages:
            if converted and converted[-1]["role"] == msg.role:
                converted[-1]["content"] = f"{converted[-1]['content']}\n\n{msg.content}"
            else:
                converted.append({"role": msg.role, "content": msg.content})
        return converted

    @staticmethod
    def _serialize_tool(tool: ToolSchema) -> Dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters,
        }

    def _parse_response(self, data: Dict[str, Any], req: CompletionRequest) -> CompletionResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProtocolError("anthropic response has no content blocks", provider=self.name)
        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in blocks:
            block = as_object(block, "content block", provider=self.name)
            btype = block.get("type")
            if btype == "text":
                texts.append(block.get("text") or "")
            elif btype == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id"),
                        name=block.get("name") or "",
                        arguments=json.dumps(block.get("input") or {}, ensure_ascii=False),
                    )
                )
        usage_raw = as_object(data.get("usage"), "usage", provider=self.name)
        usage = None
        if usage_raw:
            prompt = usage_raw.get("input_tokens", 0) or 0
            completion = usage_raw.get("output_tokens", 0) or 0
            usage = Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
            self._log.info(
                "Token usage",
                extra={"extra": {"provider": self.name, "model": data.get("model"), **usage.to_dict()}},
            )
        return CompletionResponse(
            id=data.get("id") or f"msg-{uuid4().hex}",
            model=data.get("model") or self._model_for(req),
            content="".join(texts),
            finish_reason=data.get("stop_reason"),
            usage=usage,
            tool_calls=tool_calls or None,
        )
