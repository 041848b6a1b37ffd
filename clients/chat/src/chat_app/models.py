"""Records exchanged with the chat service and their client-side views."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from chatgw.documents import SERVER_TIMESTAMP

USERS = "users"
MESSAGES = "messages"
ORDER_KEY = "created_at"


@dataclass(frozen=True)
class Account:
    account_id: str
    email: str


@dataclass(frozen=True)
class Profile:
    uid: str
    email: str
    nickname: str
    created_at: Optional[int] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Profile":
        return cls(
            uid=str(record.get("uid") or record.get("id") or ""),
            email=str(record.get("email") or ""),
            nickname=str(record.get("nickname") or ""),
            created_at=_optional_int(record.get("created_at")),
        )

    def to_fields(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "nickname": self.nickname,
            "created_at": _timestamp_or_pending(self.created_at),
        }


@dataclass(frozen=True)
class Message:
    message_id: str
    text: str
    author_id: str
    author_email: str
    author_nickname: Optional[str] = None
    created_at: Optional[int] = None
    read_by: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Message":
        read_by = record.get("read_by") or []
        return cls(
            message_id=str(record["id"]),
            text=str(record.get("text") or ""),
            author_id=str(record.get("author_id") or ""),
            author_email=str(record.get("author_email") or ""),
            author_nickname=record.get("author_nickname") or None,
            created_at=_optional_int(record.get("created_at")),
            read_by=frozenset(str(uid) for uid in read_by),
        )

    def to_fields(self) -> Dict[str, Any]:
        """Fields for a new message record; the id is assigned by the store."""

        return {
            "text": self.text,
            "author_id": self.author_id,
            "author_email": self.author_email,
            "author_nickname": self.author_nickname,
            "created_at": _timestamp_or_pending(self.created_at),
            "read_by": sorted(self.read_by),
        }

    def with_read_by(self, read_by: Iterable[str]) -> "Message":
        return replace(self, read_by=frozenset(read_by))


def order_snapshot(messages: Iterable[Message]) -> List[Message]:
    """Sort by ``created_at`` ascending; ties keep their snapshot order.

    Messages whose server timestamp has not been assigned yet go last.
    """

    return sorted(messages, key=lambda m: (m.created_at is None, m.created_at or 0))


def _timestamp_or_pending(value: Optional[int]) -> Any:
    return SERVER_TIMESTAMP if value is None else value


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)
