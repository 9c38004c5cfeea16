import json

import httpx
import pytest

from chat_gateway.domain.exceptions import ConfigurationError, NetworkError, ProtocolError, UpstreamError
from chat_gateway.domain.models import CompletionRequest, Message
from chat_gateway.providers.openai_client import OpenAICompatibleClient
from chat_gateway.tools.definitions import ToolSchema


class Resp:
    def __init__(self, data, status_code=200):
        self.status_code = status_code
        self.text = data if isinstance(data, str) else json.dumps(data)

    def json(self):
        return json.loads(self.text)


class StreamResp:
    status_code = 200

    def __init__(self, lines):
        self._lines = lines
        self.text = ""

    def __enter__(self):
        return self

    def __exit__(self, *a):
        return False

    def read(self):
        return b""

    def iter_bytes(self):
        for line in self._lines:
            yield line.encode("utf-8")


def _client_cls(captured, resp=None, stream_resp=None, exc=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            captured.update(url=url, payload=json, headers=headers)
            return resp

        def get(self, url, headers=None):
            captured.update(url=url, headers=headers)
            if exc:
                raise exc
            return resp

        def stream(self, method, url, json=None, headers=None):
            captured.update(url=url, payload=json, headers=headers)
            return stream_resp

    return Client


def _chunk(delta=None, finish_reason=None, **extra):
    choice = {"index": 0, "delta": delta or {}, "finish_reason": finish_reason}
    payload = {"id": "chatcmpl-1", "model": "llama3-70b-8192", "choices": [choice], **extra}
    return f"data: {json.dumps(payload)}\n\n"


def _request(**kw):
    return CompletionRequest(messages=[Message(role="user", content="hi")], **kw)


def test_requires_api_key():
    with pytest.raises(ConfigurationError):
        OpenAICompatibleClient(api_key="", name="groq")


def test_blocking_tools_payload_and_tool_calls(monkeypatch):
    captured = {}
    data = {
        "id": "chatcmpl-7",
        "model": "llama3-70b-8192",
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": "call_1", "type": "function", "function": {"name": "get_price", "arguments": '{"token":"X"}'}}
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
    }
    monkeypatch.setattr("httpx.Client", _client_cls(captured, resp=Resp(data)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    tool = ToolSchema(
        name="get_price",
        description="price lookup",
        parameters={"type": "object", "properties": {"token": {"type": "string"}}, "required": ["token"]},
    )
    res = client.complete(_request(tools=[tool], tool_choice="auto", max_output_tokens=50))

    assert captured["url"] == "https://api.groq.com/openai/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer gsk_0123456789"
    payload = captured["payload"]
    assert payload["model"] == "llama3-70b-8192"
    assert payload["max_tokens"] == 50
    assert payload["tools"][0]["type"] == "function"
    assert payload["tools"][0]["function"]["parameters"]["required"] == ["token"]
    assert payload["tool_choice"] == "auto"

    assert res.content == ""
    assert res.has_tool_calls
    assert res.tool_calls[0].id == "call_1"
    assert res.tool_calls[0].arguments == '{"token":"X"}'
    assert res.usage.total_tokens == 7


def test_blocking_without_choices_is_protocol_error(monkeypatch):
    monkeypatch.setattr("httpx.Client", _client_cls({}, resp=Resp({"id": "x", "choices": []})))
    client = OpenAICompatibleClient(api_key="sk-0123456789", name="openai")
    with pytest.raises(ProtocolError):
        client.complete(_request())


def test_stream_text_done_and_trailing_usage(monkeypatch):
    lines = [
        _chunk({"role": "assistant", "content": ""}),
        _chunk({"content": "Hel"}),
        _chunk({"content": "lo"}),
        _chunk({}, finish_reason="stop"),
        # Groq 在最后一块 x_groq 里给 usage
        _chunk({}, x_groq={"usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}}),
        "data: [DONE]\n\n",
    ]
    monkeypatch.setattr("httpx.Client", _client_cls({}, stream_resp=StreamResp(lines)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    events = list(client.stream(_request()))

    assert [e.content_delta for e in events if not e.is_complete] == ["Hel", "lo"]
    assert sum(1 for e in events if e.is_complete) == 1
    final = events[-1]
    assert final.is_complete
    assert final.finish_reason == "stop"
    assert final.usage.total_tokens == 7


def test_stream_tool_call_deltas(monkeypatch):
    lines = [
        _chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "get_price", "arguments": ""}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": "{\"token\":"}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": "\"X\"}"}}]}),
        _chunk({}, finish_reason="tool_calls"),
    ]
    monkeypatch.setattr("httpx.Client", _client_cls({}, stream_resp=StreamResp(lines)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    events = list(client.stream(_request()))

    deltas = [d for e in events for d in (e.tool_call_deltas or [])]
    assert deltas[0].name == "get_price"
    assert "".join(d.arguments_fragment for d in deltas) == '{"token":"X"}'
    # 没有 [DONE] 时在流结束处产出终止事件
    assert events[-1].is_complete
    assert events[-1].finish_reason == "tool_calls"


def test_list_models_live_and_degraded(monkeypatch):
    captured = {}
    monkeypatch.setattr(
        "httpx.Client",
        _client_cls(captured, resp=Resp({"data": [{"id": "llama3-8b-8192"}, {"id": "mixtral-8x7b-32768"}]})),
    )
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    listing = client.list_models()
    assert captured["url"].endswith("/models")
    assert listing.status == "success"
    assert listing.models == ["llama3-8b-8192", "mixtral-8x7b-32768"]

    monkeypatch.setattr("httpx.Client", _client_cls({}, exc=httpx.ConnectError("refused")))
    listing = client.list_models()
    assert listing.status == "degraded"
    assert "llama3-70b-8192" in listing.models
    assert listing.reason


def test_network_error_mapping(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            raise httpx.ConnectError("dns failure")

    monkeypatch.setattr("httpx.Client", Client)
    client = OpenAICompatibleClient(api_key="sk-0123456789", name="openai")
    with pytest.raises(NetworkError):
        client.complete(_request())


def test_context_window_uses_catalog():
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    assert client.default_model == "llama3-70b-8192"
    assert client.context_window() == 8192
    assert client.context_window("mixtral-8x7b-32768") == 32768
    assert client.context_window("unknown-model") == 8192


def test_stream_skips_wrongly_shaped_records(monkeypatch):
    lines = [
        _chunk({"content": "Hel"}),
        'data: {"choices": [{"delta": "oops"}]}\n\n',
        'data: {"choices": ["not-a-choice"]}\n\n',
        'data: {"choices": "nope"}\n\n',
        'data: {"choices": [{"delta": {"tool_calls": [7]}}]}\n\n',
        'data: {"usage": "many", "choices": []}\n\n',
        "data: [1, 2]\n\n",
        _chunk({"content": "lo"}, finish_reason="stop"),
        "data: [DONE]\n\n",
    ]
    monkeypatch.setattr("httpx.Client", _client_cls({}, stream_resp=StreamResp(lines)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    events = list(client.stream(_request()))

    assert "".join(e.content_delta for e in events if not e.is_complete) == "Hello"
    assert [e.is_complete for e in events].count(True) == 1
    assert events[-1].finish_reason == "stop"


def test_stream_skips_malformed_json_record(monkeypatch):
    lines = [_chunk({"content": "a"}), "data: {not json\n\n", _chunk({"content": "b"}, finish_reason="stop")]
    monkeypatch.setattr("httpx.Client", _client_cls({}, stream_resp=StreamResp(lines)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    events = list(client.stream(_request()))
    assert [e.content_delta for e in events if not e.is_complete] == ["a", "b"]
    assert events[-1].is_complete


def test_stream_without_parseable_record_is_protocol_error(monkeypatch):
    lines = ["data: {broken\n\n", ": keep-alive\n\n", "data: also broken\n\n"]
    monkeypatch.setattr("httpx.Client", _client_cls({}, stream_resp=StreamResp(lines)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    with pytest.raises(ProtocolError) as exc:
        list(client.stream(_request()))
    assert exc.value.extra["skipped"] == 2


def test_stream_error_chunk_raises_upstream_error(monkeypatch):
    lines = [_chunk({"content": "a"}), 'data: {"error": {"message": "overloaded"}}\n\n']
    monkeypatch.setattr("httpx.Client", _client_cls({}, stream_resp=StreamResp(lines)))
    client = OpenAICompatibleClient(api_key="gsk_0123456789", name="groq")
    with pytest.raises(UpstreamError) as exc:
        list(client.stream(_request()))
    assert "overloaded" in exc.value.message


@pytest.mark.parametrize(
    "body",
    [
        {"id": "x", "choices": ["oops"]},
        {"id": "x", "choices": "oops"},
        {"id": "x", "choices": [{"message": "oops"}]},
        {"id": "x", "choices": [{"message": {"tool_calls": ["oops"]}}]},
        {"id": "x", "choices": [{"message": {"tool_calls": [{"function": "oops"}]}}]},
    ],
)
def test_blocking_wrongly_shaped_body_is_protocol_error(monkeypatch, body):
    monkeypatch.setattr("httpx.Client", _client_cls({}, resp=Resp(body)))
    client = OpenAICompatibleClient(api_key="sk-0123456789", name="openai")
    with pytest.raises(ProtocolError):
        client.complete(_request())
