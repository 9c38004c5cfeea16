import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from .models import Message


@dataclass
class ChatHistory:
    id: str
    display_name: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    provider_name: Optional[str] = None
    model_name: Optional[str] = None
    owner_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        display_name: str = "New Chat",
        owner_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> "ChatHistory":
        messages: List[Message] = []
        if system_prompt:
            messages.append(Message(role="system", content=system_prompt))
        return cls(id=f"c-{uuid4().hex}", display_name=display_name, messages=messages, owner_id=owner_id)

    def copy(self) -> "ChatHistory":
        return copy.deepcopy(self)

    def has_system_message(self) -> bool:
        return any(m.role == "system" for m in self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "providerName": self.provider_name,
            "modelName": self.model_name,
            "ownerId": self.owner_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatHistory":
        return cls(
            id=data["id"],
            display_name=data.get("displayName") or "",
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            created_at=_parse_iso(data["createdAt"]),
            updated_at=_parse_iso(data["updatedAt"]),
            provider_name=data.get("providerName"),
            model_name=data.get("modelName"),
            owner_id=data.get("ownerId"),
        )


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class HistoryStore(Protocol):
    """会话存储协议。实现方负责持久化，编排器每个成功回合只调用一次 save。"""

    def get_by_id(self, conversation_id: str) -> Optional[ChatHistory]:
        ...

    def get_by_owner(self, owner_id: str) -> List[ChatHistory]:
        ...

    def save(self, conversation: ChatHistory) -> None:
        ...

    def save_many(self, conversations: List[ChatHistory]) -> None:
        ...

    def delete(self, conversation_id: str) -> bool:
        ...

    def delete_by_owner(self, owner_id: str) -> bool:
        ...
