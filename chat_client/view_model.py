"""Per-conversation view state: confirmed history, one optimistic tail, live text."""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from enum import Enum
from typing import Callable, List, Optional

from .api_client import ChatApiClient
from .consumer import StreamConsumer, StreamHandle
from .errors import ApiError, ConversationBusyError, StreamError
from .models import ConversationRecord, ViewEntry, utc_now

logger = logging.getLogger(__name__)

UpdateListener = Callable[[ConversationRecord], None]

TEMP_PREFIX = "temp-"
CONFIRMED_PREFIX = "user-"


class ViewState(str, Enum):
    IDLE = "idle"
    AWAITING_USER_CONFIRM = "awaiting-user-confirm"
    STREAMING = "streaming"


class ConversationViewModel:
    """Merges persisted messages with the in-flight exchange of one conversation.

    ``entries`` is always the confirmed (or failed) history in append order,
    followed by at most one optimistic user entry. Text of the reply being
    streamed lives in ``streaming_text`` and is rendered after it.
    """

    def __init__(
        self,
        conversation_id: str,
        api: ChatApiClient,
        *,
        consumer: Optional[StreamConsumer] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.api = api
        self.consumer = consumer or StreamConsumer(api.http)
        self.conversation: Optional[ConversationRecord] = None
        self.state = ViewState.IDLE
        self.streaming_text = ""
        self.last_error: Optional[str] = None
        self._history: List[ViewEntry] = []
        self._pending: Optional[ViewEntry] = None
        self._stream: Optional[StreamHandle] = None
        self._listeners: List[UpdateListener] = []
        self._temp_ids = itertools.count(1)

    @property
    def entries(self) -> List[ViewEntry]:
        if self._pending is None:
            return list(self._history)
        return [*self._history, self._pending]

    @property
    def busy(self) -> bool:
        return self.state is not ViewState.IDLE

    @property
    def stream(self) -> Optional[StreamHandle]:
        return self._stream

    async def load(self) -> None:
        self.conversation = await self.api.get_conversation(self.conversation_id)
        self._history = await self.api.list_messages(self.conversation_id)

    def send(self, text: str) -> ViewEntry:
        """Append an optimistic user entry and start streaming the reply.

        Must be called from a running event loop.
        """
        if self.busy:
            raise ConversationBusyError(f"Conversation {self.conversation_id} is still streaming a reply")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Message content is required")

        entry = ViewEntry(
            id=f"{TEMP_PREFIX}{next(self._temp_ids)}",
            conversation_id=self.conversation_id,
            role="user",
            content=text,
            status="sending",
            created_at=utc_now(),
            optimistic=True,
        )
        self._pending = entry
        self.streaming_text = ""
        self.last_error = None
        self.state = ViewState.AWAITING_USER_CONFIRM
        self._stream = self.consumer.open(
            f"/conversations/{self.conversation_id}/messages",
            {"content": text},
            on_chunk=self._on_chunk,
            on_done=self._on_done,
            on_error=self._on_error,
        )
        return entry

    def retry(self, entry: ViewEntry) -> ViewEntry:
        """Drop a failed user entry and send its text again as a new exchange."""
        if entry.role != "user" or entry.status != "failed":
            raise ValueError("Only failed user messages can be retried")
        if self.busy:
            raise ConversationBusyError(f"Conversation {self.conversation_id} is still streaming a reply")
        self._history = [item for item in self._history if item.id != entry.id]
        return self.send(entry.content)

    async def rename(self, title: str) -> Optional[ConversationRecord]:
        title = title.strip()
        if not title or (self.conversation is not None and title == self.conversation.title):
            return self.conversation
        self.conversation = await self.api.rename_conversation(self.conversation_id, title)
        self._publish()
        return self.conversation

    def close(self) -> None:
        if self._stream is not None:
            self._stream.cancel()
            self._stream = None
        self._pending = None
        self.streaming_text = ""
        self.state = ViewState.IDLE

    def dismiss_error(self) -> None:
        self.last_error = None

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_chunk(self, text: str) -> None:
        if self.state is ViewState.AWAITING_USER_CONFIRM:
            self.state = ViewState.STREAMING
        self.streaming_text += text

    async def _on_done(self, message_id: str, content: str) -> None:
        pending = self._pending
        if pending is not None:
            confirmed = replace(
                pending,
                id=CONFIRMED_PREFIX + pending.id[len(TEMP_PREFIX):],
                status="sent",
                optimistic=False,
            )
            self._history.append(confirmed)
        self._history.append(
            ViewEntry(
                id=message_id,
                conversation_id=self.conversation_id,
                role="assistant",
                content=content,
                status="sent",
                created_at=utc_now(),
            )
        )
        self._finish()
        if self.conversation is not None:
            self.conversation = replace(self.conversation, updated_at=utc_now())
        else:
            try:
                self.conversation = await self.api.get_conversation(self.conversation_id)
            except ApiError as exc:
                logger.warning("Could not refresh conversation %s: %s", self.conversation_id, exc)
                return
        self._publish()

    def _on_error(self, error: StreamError) -> None:
        logger.info("Reply in conversation %s failed: %s", self.conversation_id, error.message)
        pending = self._pending
        if pending is not None:
            self._history.append(
                replace(pending, status="failed", error_message=error.message, optimistic=False)
            )
        self.last_error = error.message
        self._finish()

    def _finish(self) -> None:
        self._pending = None
        self._stream = None
        self.streaming_text = ""
        self.state = ViewState.IDLE

    def _publish(self) -> None:
        if self.conversation is None:
            return
        for listener in list(self._listeners):
            listener(self.conversation)
