"""Client-side records parsed from the chat API's JSON."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversationRecord:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ConversationRecord":
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
        )


@dataclass
class ViewEntry:
    """One message as shown in a conversation view.

    ``optimistic`` entries were fabricated locally and carry a temporary id
    until the server confirms the exchange.
    """

    id: str
    conversation_id: str
    role: str
    content: str
    status: str
    created_at: datetime
    error_message: Optional[str] = None
    optimistic: bool = False

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ViewEntry":
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data.get("content") or "",
            status=data["status"],
            error_message=data.get("error_message"),
            created_at=parse_timestamp(data["created_at"]),
        )
