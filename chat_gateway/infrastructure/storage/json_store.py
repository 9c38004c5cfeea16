import json
import os
from pathlib import Path
from typing import List, Optional, Union
from uuid import uuid4

from chat_gateway.config.settings import settings
from chat_gateway.domain.conversation import ChatHistory, HistoryStore
from chat_gateway.domain.exceptions import BusinessError
from chat_gateway.infrastructure.logging.logger import get_logger

_log = get_logger("storage.json")


class JsonHistoryStore(HistoryStore):
    """每个会话一个 JSON 文件：<storage_root>/conversations/<id>.json。"""

    def __init__(self, root: Union[str, Path, None] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def get_by_id(self, conversation_id: str) -> Optional[ChatHistory]:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        return self._read(path)

    def get_by_owner(self, owner_id: str) -> List[ChatHistory]:
        items: List[ChatHistory] = []
        for path in sorted(self._conv_root.glob("*.json")):
            try:
                conv = self._read(path)
            except BusinessError as e:
                _log.warning("Skipping unreadable conversation", extra={"extra": {"path": str(path), "error": e.message}})
                continue
            if conv.owner_id == owner_id:
                items.append(conv)
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def save(self, conversation: ChatHistory) -> None:
        path = self._path(conversation.id)
        tmp_path = self._conv_root / f"{conversation.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(conversation.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), conversation_id=conversation.id)

    def save_many(self, conversations: List[ChatHistory]) -> None:
        for conv in conversations:
            self.save(conv)

    def delete(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), conversation_id=conversation_id)
        return True

    def delete_by_owner(self, owner_id: str) -> bool:
        deleted = False
        for conv in self.get_by_owner(owner_id):
            deleted = self.delete(conv.id) or deleted
        return deleted

    def _path(self, conversation_id: str) -> Path:
        # 会话 ID 只允许作为文件名，不允许携带路径
        if not conversation_id or Path(conversation_id).name != conversation_id:
            raise BusinessError(code="INVALID_CONVERSATION_ID", message=f"Invalid conversation id: {conversation_id!r}")
        return self._conv_root / f"{conversation_id}.json"

    @staticmethod
    def _read(path: Path) -> ChatHistory:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ChatHistory.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), path=str(path))
