import json

import pytest

from chat_gateway.providers.streaming import RecordBuffer, data_of, iter_lines, parse_record


def test_record_buffer_keeps_partial_records():
    buf = RecordBuffer()
    assert buf.feed(b'data: {"a"') == []
    assert buf.pending == 'data: {"a"'
    assert buf.feed(b": 1}\r\ndata: [DO") == ['data: {"a": 1}']
    assert buf.feed(b"NE]\n") == ["data: [DONE]"]
    assert buf.flush() == []


def test_record_buffer_handles_split_utf8():
    text = "data: 你好\n".encode("utf-8")
    buf = RecordBuffer()
    out = []
    for i in range(len(text)):
        out.extend(buf.feed(text[i:i + 1]))
    assert out == ["data: 你好"]


def test_iter_lines_flushes_trailing_record():
    assert list(iter_lines([b"one\ntw", b"o"])) == ["one", "two"]


@pytest.mark.parametrize(
    "line,expected",
    [
        ("", None),
        (": ping", None),
        ("event: message_start", None),
        ("data: {\"x\": 1}", "{\"x\": 1}"),
        ("data:[DONE]", "[DONE]"),
        ("{\"x\": 2}", "{\"x\": 2}"),
    ],
)
def test_data_of(line, expected):
    assert data_of(line) == expected


def test_parse_record():
    assert parse_record("[DONE]").done
    assert parse_record('{"k": "v"}').payload == {"k": "v"}
    with pytest.raises(json.JSONDecodeError):
        parse_record("{broken")
