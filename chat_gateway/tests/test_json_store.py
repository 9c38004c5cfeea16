import tempfile
from pathlib import Path

import pytest

from chat_gateway.domain.conversation import ChatHistory
from chat_gateway.domain.exceptions import BusinessError
from chat_gateway.domain.models import Message
from chat_gateway.infrastructure.storage.json_store import JsonHistoryStore


def test_json_store_save_and_load():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonHistoryStore(root=root)
        conv = ChatHistory.new(display_name="Demo", owner_id="u1", system_prompt="sys")
        conv.messages.append(Message(role="user", content="你好"))
        store.save(conv)

        path = root / "conversations" / f"{conv.id}.json"
        assert path.exists()
        # 写入使用临时文件 + 原子替换，不应残留临时文件
        assert list((root / "conversations").glob("*.tmp")) == []

        loaded = store.get_by_id(conv.id)
        assert loaded.messages == conv.messages
        assert loaded.display_name == "Demo"
        assert store.get_by_id("c-missing") is None


def test_json_store_owner_queries_and_delete():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d))
        a = ChatHistory.new(owner_id="u1")
        b = ChatHistory.new(owner_id="u1")
        c = ChatHistory.new(owner_id="u2")
        store.save_many([a, b, c])

        assert {x.id for x in store.get_by_owner("u1")} == {a.id, b.id}
        assert store.delete(c.id) is True
        assert store.delete(c.id) is False
        assert store.delete_by_owner("u1") is True
        assert store.get_by_owner("u1") == []
        assert store.delete_by_owner("u1") is False


def test_json_store_read_error_and_invalid_id():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d))
        (Path(d) / "conversations" / "c-bad.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(BusinessError) as ei:
            store.get_by_id("c-bad")
        assert ei.value.code == "STORE_READ_ERROR"
        # 损坏的文件在按用户查询时被跳过
        assert store.get_by_owner("anyone") == []
        with pytest.raises(BusinessError):
            store.get_by_id("../escape")
