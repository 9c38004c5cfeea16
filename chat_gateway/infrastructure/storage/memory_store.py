import copy
import threading
from typing import Dict, List, Optional

from chat_gateway.domain.conversation import ChatHistory, HistoryStore


class InMemoryHistoryStore(HistoryStore):
    """进程内会话存储，读写都做深拷贝，调用方拿到的对象修改不会影响存储内容。"""

    def __init__(self) -> None:
        self._chats: Dict[str, ChatHistory] = {}
        self._lock = threading.Lock()

    def get_by_id(self, conversation_id: str) -> Optional[ChatHistory]:
        chat = self._chats.get(conversation_id)
        return copy.deepcopy(chat) if chat else None

    def get_by_owner(self, owner_id: str) -> List[ChatHistory]:
        chats = [copy.deepcopy(c) for c in self._chats.values() if c.owner_id == owner_id]
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats

    def save(self, conversation: ChatHistory) -> None:
        with self._lock:
            self._chats[conversation.id] = copy.deepcopy(conversation)

    def save_many(self, conversations: List[ChatHistory]) -> None:
        with self._lock:
            for conv in conversations:
                self._chats[conv.id] = copy.deepcopy(conv)

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._chats.pop(conversation_id, None) is not None

    def delete_by_owner(self, owner_id: str) -> bool:
        with self._lock:
            ids = [cid for cid, c in self._chats.items() if c.owner_id == owner_id]
            for cid in ids:
                del self._chats[cid]
        return bool(ids)

    def __len__(self) -> int:
        return len(self._chats)
