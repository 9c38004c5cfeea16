import threading
import time

from chat_gateway.tools.definitions import DegradedResult, ToolCall, ToolResult, ToolSchema
from chat_gateway.tools.dispatch import FunctionToolProvider, ToolDispatcher, validate_arguments

PRICE_SCHEMA = ToolSchema(
    name="get_price",
    description="Look up a token price",
    parameters={
        "type": "object",
        "properties": {
            "token": {"type": "string"},
            "currency": {"type": "string", "enum": ["USD", "EUR"]},
            "precision": {"type": "integer"},
        },
        "required": ["token"],
    },
)


def _dispatcher(**kw):
    d = ToolDispatcher(**kw)
    d.register(PRICE_SCHEMA, lambda args: {"price": 1.23, "token": args["token"]})
    return d


def test_dispatch_success():
    res = _dispatcher().dispatch("get_price", '{"token": "X"}', call_id="c1")
    assert res.ok
    assert res.result == {"price": 1.23, "token": "X"}
    assert res.call_id == "c1"
    assert res.status == "success"


def test_unknown_tool_becomes_error_result():
    res = _dispatcher().dispatch("nope", "{}")
    assert res.error == "unknown tool: nope"


def test_invalid_arguments_become_error_result():
    d = _dispatcher()
    assert d.dispatch("get_price", "{bad").error.startswith("invalid arguments for get_price")
    assert "JSON object" in d.dispatch("get_price", "[1, 2]").error
    assert "missing required" in d.dispatch("get_price", "{}").error
    assert "unexpected" in d.dispatch("get_price", '{"token": "X", "tokn": 1}').error
    assert "type integer" in d.dispatch("get_price", '{"token": "X", "precision": "2"}').error
    assert "one of" in d.dispatch("get_price", '{"token": "X", "currency": "GBP"}').error


def test_validate_arguments_rejects_bool_for_integer():
    assert validate_arguments(PRICE_SCHEMA, {"token": "X", "precision": True})
    assert validate_arguments(PRICE_SCHEMA, {"token": "X", "precision": 2}) is None


def test_handler_exception_becomes_error_result():
    d = ToolDispatcher()

    def boom(args):
        raise RuntimeError("upstream exploded")

    d.register(ToolSchema(name="boom", description="fails"), boom)
    res = d.dispatch("boom", "{}")
    assert res.error == "tool boom failed: upstream exploded"
    assert res.status == "failure"


def test_degraded_result():
    d = ToolDispatcher()
    d.register(ToolSchema(name="quote", description="q"), lambda args: DegradedResult(value=[], reason="cache only"))
    res = d.dispatch("quote", "")
    assert res.ok
    assert res.status == "degraded"
    assert res.note == "cache only"


def test_dispatch_all_runs_in_parallel_and_keeps_order():
    d = ToolDispatcher(max_workers=4)
    barrier = threading.Barrier(3, timeout=5)

    def slow(args):
        barrier.wait()
        time.sleep(0.01 * (3 - args["n"]))
        return args["n"]

    d.register(
        ToolSchema(name="slow", description="s", parameters={"type": "object", "properties": {"n": {"type": "integer"}}}),
        slow,
    )
    calls = [ToolCall(name="slow", arguments=f'{{"n": {i}}}', id=f"c{i}") for i in range(3)]
    results = d.dispatch_all(calls)
    assert [r.result for r in results] == [0, 1, 2]
    assert [r.call_id for r in results] == ["c0", "c1", "c2"]


def test_from_provider_binding():
    provider = FunctionToolProvider(
        [
            (PRICE_SCHEMA, lambda args: {"price": 2.5}),
            (ToolSchema(name="fail", description="f"), lambda args: (_ for _ in ()).throw(ValueError("nope"))),
        ]
    )
    d = ToolDispatcher.from_provider(provider)
    assert [s.name for s in d.list_schemas()] == ["get_price", "fail"]
    assert d.dispatch("get_price", '{"token": "X"}').result == {"price": 2.5}
    failed = d.dispatch("fail", "{}")
    assert failed.error == "nope"
    assert failed.status == "failure"
    assert d.dispatch("get_price", "{}").error.startswith("invalid arguments")


class RemoteProvider:
    def list_schemas(self):
        return [ToolSchema(name="remote", description="r")]

    def dispatch(self, name, arguments_json):
        return ToolResult(tool_name=name, result="stale", degraded=True, note="fallback")


def test_from_provider_preserves_degraded():
    d = ToolDispatcher.from_provider(RemoteProvider())
    res = d.dispatch("remote", "{}")
    assert res.status == "degraded"
    assert res.result == "stale"
    assert res.note == "fallback"


class RejectingProvider:
    def list_schemas(self):
        return [ToolSchema(name="quota", description="q")]

    def dispatch(self, name, arguments_json):
        return ToolResult(tool_name=name, error="quota exhausted for today")


def test_from_provider_keeps_error_text():
    res = ToolDispatcher.from_provider(RejectingProvider()).dispatch("quota", "{}", call_id="c9")
    assert not res.ok
    assert res.error == "quota exhausted for today"
    assert res.call_id == "c9"
    assert res.to_payload() == {"tool": "quota", "status": "failure", "error": "quota exhausted for today"}


def test_handler_without_return_value_is_success():
    d = ToolDispatcher()
    d.register(ToolSchema(name="notify", description="n"), lambda args: None)
    res = d.dispatch("notify", "{}")
    assert res.ok
    assert res.status == "success"
    assert res.result is None
    payload = res.to_payload()
    assert payload == {"tool": "notify", "status": "success", "result": None}
    assert "error" not in payload
