"""Records exchanged between the store, the orchestrator and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Literal, Optional

Role = Literal["user", "assistant"]
MessageStatus = Literal["sending", "sent", "failed"]

STATUS_SENDING: MessageStatus = "sending"
STATUS_SENT: MessageStatus = "sent"
STATUS_FAILED: MessageStatus = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


@dataclass
class Message:
    id: str
    conversation_id: str
    role: Role
    content: str
    status: MessageStatus
    created_at: datetime
    error_message: Optional[str] = None

    def as_turn(self) -> Dict[str, str]:
        """Return the message in chat-completions ``{"role", "content"}`` form."""
        return {"role": self.role, "content": self.content}
