import json

from chat_gateway.domain.exceptions import NoProviderError
from chat_gateway.domain.models import StreamEvent, Usage
from chat_gateway.orchestrator.sse import encode_error, encode_event, iter_sse
from chat_gateway.tools.definitions import ToolCallDelta


def _decode(frame):
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):-2])


def test_encode_delta_event():
    frame = encode_event(
        StreamEvent(
            id="r1",
            model="m",
            content_delta="Hel",
            tool_call_deltas=[ToolCallDelta(index=0, id="c1", name="get_price", arguments_fragment="{")],
        )
    )
    data = _decode(frame)
    assert data["id"] == "r1"
    assert data["content"] == "Hel"
    assert data["isComplete"] is False
    assert data["toolCalls"] == [{"index": 0, "id": "c1", "name": "get_price", "arguments": "{"}]


def test_encode_terminal_event():
    data = _decode(
        encode_event(StreamEvent(id="r1", is_complete=True, finish_reason="stop", usage=Usage(1, 2, 3)))
    )
    assert data == {
        "id": "r1",
        "content": "",
        "isComplete": True,
        "finishReason": "stop",
        "usage": {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3},
    }


def test_encode_error():
    assert _decode(encode_error(NoProviderError())) == {
        "error": True,
        "message": "No AI provider has been registered",
        "code": "NO_PROVIDER",
    }
    event = StreamEvent(is_complete=True, error="boom", error_code="UPSTREAM_ERROR")
    assert _decode(encode_event(event))["code"] == "UPSTREAM_ERROR"


def test_iter_sse_stops_after_terminal():
    events = [
        StreamEvent(content_delta="a"),
        StreamEvent(is_complete=True, finish_reason="stop"),
        StreamEvent(content_delta="late"),
    ]
    frames = list(iter_sse(events))
    assert len(frames) == 2
    assert _decode(frames[-1])["isComplete"] is True
