"""Conversation and message persistence.

The orchestrator only talks to the :class:`ConversationStore` protocol, so the
store can be swapped for the in-memory implementation in tests or the sqlite
implementation in a long-running deployment. Every implementation must be safe
to call from worker threads: the HTTP layer runs store calls through
``run_in_threadpool`` to keep the event loop free.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import ConversationNotFoundError, ExchangeInProgressError
from .models import (
    STATUS_FAILED,
    STATUS_SENDING,
    STATUS_SENT,
    Conversation,
    Message,
    MessageStatus,
    utc_now,
)

DEFAULT_TITLE = "New Chat"


class ConversationStore(Protocol):
    def create_conversation(self, title: Optional[str] = None) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...

    def list_messages(
        self, conversation_id: str, status: Optional[MessageStatus] = None
    ) -> List[Message]:
        ...

    def start_exchange(self, conversation_id: str, content: str) -> Tuple[Message, Message]:
        ...

    def complete_message(self, message_id: str, content: str) -> Message:
        ...

    def fail_message(self, message_id: str, error: str) -> Message:
        ...

    def fail_pending(self, error: str) -> int:
        ...


def _new_id() -> str:
    return str(uuid.uuid4())


def _ensure_sending(message: Message) -> None:
    if message.status != STATUS_SENDING:
        raise ValueError(
            f"Message {message.id} is already '{message.status}' and cannot be updated"
        )


class InMemoryConversationStore:
    """Dictionary-backed store guarded by a single lock."""

    def __init__(self, default_title: str = DEFAULT_TITLE) -> None:
        self.default_title = default_title
        self._lock = threading.RLock()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}

    def create_conversation(self, title: Optional[str] = None) -> Conversation:
        now = utc_now()
        conversation = Conversation(
            id=_new_id(),
            title=title or self.default_title,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return replace(conversation)

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            return replace(self._require(conversation_id))

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            items = [replace(c) for c in self._conversations.values()]
        return sorted(items, key=lambda c: c.updated_at, reverse=True)

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        with self._lock:
            conversation = self._require(conversation_id)
            conversation.title = title
            conversation.updated_at = utc_now()
            return replace(conversation)

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            self._require(conversation_id)
            del self._conversations[conversation_id]
            del self._messages[conversation_id]

    def list_messages(
        self, conversation_id: str, status: Optional[MessageStatus] = None
    ) -> List[Message]:
        with self._lock:
            self._require(conversation_id)
            messages = self._messages[conversation_id]
            return [replace(m) for m in messages if status is None or m.status == status]

    def start_exchange(self, conversation_id: str, content: str) -> Tuple[Message, Message]:
        with self._lock:
            conversation = self._require(conversation_id)
            messages = self._messages[conversation_id]
            if any(m.role == "assistant" and m.status == STATUS_SENDING for m in messages):
                raise ExchangeInProgressError(conversation_id)

            now = utc_now()
            user_message = Message(
                id=_new_id(),
                conversation_id=conversation_id,
                role="user",
                content=content,
                status=STATUS_SENT,
                created_at=now,
            )
            placeholder = Message(
                id=_new_id(),
                conversation_id=conversation_id,
                role="assistant",
                content="",
                status=STATUS_SENDING,
                created_at=now,
            )
            messages.extend([user_message, placeholder])
            conversation.updated_at = now
            return replace(user_message), replace(placeholder)

    def complete_message(self, message_id: str, content: str) -> Message:
        with self._lock:
            message = self._find_message(message_id)
            _ensure_sending(message)
            message.content = content
            message.status = STATUS_SENT
            return replace(message)

    def fail_message(self, message_id: str, error: str) -> Message:
        with self._lock:
            message = self._find_message(message_id)
            _ensure_sending(message)
            message.status = STATUS_FAILED
            message.error_message = error
            return replace(message)

    def fail_pending(self, error: str) -> int:
        count = 0
        with self._lock:
            for messages in self._messages.values():
                for message in messages:
                    if message.status == STATUS_SENDING:
                        message.status = STATUS_FAILED
                        message.error_message = error
                        count += 1
        return count

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _find_message(self, message_id: str) -> Message:
        for messages in self._messages.values():
            for message in messages:
                if message.id == message_id:
                    return message
        raise KeyError(message_id)


def _to_text(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SqliteConversationStore:
    """sqlite persistence for conversations and messages."""

    def __init__(self, path: Path | str, default_title: str = DEFAULT_TITLE) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.default_title = default_title
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._tune_pragmas()
        self._init_schema()

    def _tune_pragmas(self) -> None:
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL CHECK (status IN ('sending', 'sent', 'failed')),
                error_message TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
            ON messages(conversation_id, created_at);
            """
        )
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def create_conversation(self, title: Optional[str] = None) -> Conversation:
        now = utc_now()
        conversation = Conversation(
            id=_new_id(),
            title=title or self.default_title,
            created_at=now,
            updated_at=now,
        )
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (conversation.id, conversation.title, _to_text(now), _to_text(now)),
            )
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self._require(conversation_id)

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM conversations ORDER BY updated_at DESC, rowid DESC"
            ).fetchall()
        return [self._to_conversation(row) for row in rows]

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, _to_text(utc_now()), conversation_id),
            )
            if cur.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)
            return self._require(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            if cur.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)

    def list_messages(
        self, conversation_id: str, status: Optional[MessageStatus] = None
    ) -> List[Message]:
        query = "SELECT * FROM messages WHERE conversation_id = ?"
        params: Tuple[str, ...] = (conversation_id,)
        if status is not None:
            query += " AND status = ?"
            params += (status,)
        query += " ORDER BY created_at ASC, rowid ASC"
        with self._lock:
            self._require(conversation_id)
            rows = self.conn.execute(query, params).fetchall()
        return [self._to_message(row) for row in rows]

    def start_exchange(self, conversation_id: str, content: str) -> Tuple[Message, Message]:
        now = utc_now()
        user_message = Message(
            id=_new_id(),
            conversation_id=conversation_id,
            role="user",
            content=content,
            status=STATUS_SENT,
            created_at=now,
        )
        placeholder = Message(
            id=_new_id(),
            conversation_id=conversation_id,
            role="assistant",
            content="",
            status=STATUS_SENDING,
            created_at=now,
        )
        with self._lock, self.conn:
            self._require(conversation_id)
            pending = self.conn.execute(
                "SELECT 1 FROM messages WHERE conversation_id = ? AND role = 'assistant' "
                "AND status = ? LIMIT 1",
                (conversation_id, STATUS_SENDING),
            ).fetchone()
            if pending is not None:
                raise ExchangeInProgressError(conversation_id)
            for message in (user_message, placeholder):
                self.conn.execute(
                    """
                    INSERT INTO messages (id, conversation_id, role, content, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.role,
                        message.content,
                        message.status,
                        _to_text(message.created_at),
                    ),
                )
            self.conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (_to_text(now), conversation_id),
            )
        return user_message, placeholder

    def complete_message(self, message_id: str, content: str) -> Message:
        with self._lock, self.conn:
            _ensure_sending(self._find_message(message_id))
            self.conn.execute(
                "UPDATE messages SET content = ?, status = ? WHERE id = ?",
                (content, STATUS_SENT, message_id),
            )
            return self._find_message(message_id)

    def fail_message(self, message_id: str, error: str) -> Message:
        with self._lock, self.conn:
            _ensure_sending(self._find_message(message_id))
            self.conn.execute(
                "UPDATE messages SET status = ?, error_message = ? WHERE id = ?",
                (STATUS_FAILED, error, message_id),
            )
            return self._find_message(message_id)

    def fail_pending(self, error: str) -> int:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE messages SET status = ?, error_message = ? WHERE status = ?",
                (STATUS_FAILED, error, STATUS_SENDING),
            )
        return cur.rowcount

    def _require(self, conversation_id: str) -> Conversation:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return self._to_conversation(row)

    def _find_message(self, message_id: str) -> Message:
        row = self.conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if row is None:
            raise KeyError(message_id)
        return self._to_message(row)

    @staticmethod
    def _to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            status=row["status"],
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
