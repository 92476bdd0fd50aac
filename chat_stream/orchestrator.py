"""Bridges completion output to the push channel and owns the exchange lifecycle.

One exchange runs in two phases. :meth:`StreamOrchestrator.begin` validates the
request and persists the user message together with its assistant placeholder;
failures there surface as ordinary HTTP errors because nothing has been
streamed yet. :meth:`StreamOrchestrator.run` then relays fragments as ``chunk``
events, persists the terminal state of the placeholder and only afterwards
pushes ``done`` or ``error``, so a client that reloads history on ``done`` sees
the finished message.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool

from .completion import Completed, CompletionSource, CompletionStream, Failed, Fragment
from .config import ChatConfig
from .models import STATUS_SENT, Message
from .store import ConversationStore
from .transport import EVENT_CHUNK, EVENT_DONE, EVENT_ERROR, EventChannel

logger = logging.getLogger(__name__)

CANCELLED_DETAIL = "cancelled"


@dataclass
class StreamSession:
    """Request-scoped state for one streamed exchange."""

    conversation_id: str
    prompt: str
    user_message: Message
    placeholder: Message
    history: List[dict] = field(default_factory=list)
    buffer: List[str] = field(default_factory=list)
    stream: Optional[CompletionStream] = None
    finished: bool = False
    cancelled: bool = False

    @property
    def text(self) -> str:
        return "".join(self.buffer)

    def cancel(self) -> None:
        """Cancel the completion once; a no-op after the exchange finished."""
        if self.finished or self.cancelled:
            return
        self.cancelled = True
        if self.stream is not None:
            self.stream.cancel()


class StreamOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        source: CompletionSource,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self.store = store
        self.source = source
        self.config = config or ChatConfig()

    async def begin(self, conversation_id: str, content: str) -> StreamSession:
        """Validate the request and persist the user message plus placeholder.

        Raises ``ValueError`` for unusable content, ``ConversationNotFoundError``
        for an unknown conversation and ``ExchangeInProgressError`` when a reply
        is already being streamed. Nothing is persisted in any of those cases.
        """
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Message content is required")

        await run_in_threadpool(self.store.get_conversation, conversation_id)
        prior = await run_in_threadpool(self.store.list_messages, conversation_id, STATUS_SENT)
        history = [message.as_turn() for message in prior]
        if self.config.max_history_messages > 0:
            history = history[-self.config.max_history_messages :]

        user_message, placeholder = await run_in_threadpool(
            self.store.start_exchange, conversation_id, content
        )
        logger.info(
            "Started exchange in conversation %s (placeholder %s, %d prior turn(s))",
            conversation_id,
            placeholder.id,
            len(history),
        )
        return StreamSession(
            conversation_id=conversation_id,
            prompt=content,
            user_message=user_message,
            placeholder=placeholder,
            history=history,
        )

    def channel_for(self, session: StreamSession) -> EventChannel:
        """Return a push channel whose producer runs ``session``."""

        async def produce(channel: EventChannel) -> None:
            await self.run(session, channel)

        return EventChannel(produce)

    async def run(self, session: StreamSession, channel: EventChannel) -> None:
        channel.on_disconnect(session.cancel)
        try:
            if not session.cancelled:
                session.stream = self.source.open(session.prompt, session.history)
                await self._relay(session, channel)
        except asyncio.CancelledError:
            session.cancel()
            await asyncio.shield(self._persist_failure(session, CANCELLED_DETAIL))
            raise
        except Exception as exc:
            logger.exception("Exchange failed in conversation %s", session.conversation_id)
            if not session.finished:
                await self._fail(session, channel, f"Failed to generate response: {exc}")
        finally:
            if session.cancelled:
                await asyncio.shield(self._persist_failure(session, CANCELLED_DETAIL))
            channel.close()

    async def _relay(self, session: StreamSession, channel: EventChannel) -> None:
        async for event in session.stream:
            if session.cancelled:
                break
            if isinstance(event, Fragment):
                session.buffer.append(event.text)
                channel.push({"content": event.text}, EVENT_CHUNK)
            elif isinstance(event, Completed):
                await self._complete(session, channel, event.text)
                return
            elif isinstance(event, Failed):
                await self._fail(session, channel, event.error)
                return

        if not session.cancelled:
            await self._fail(session, channel, "Completion ended without a result")

    async def _complete(self, session: StreamSession, channel: EventChannel, text: str) -> None:
        if text != session.text:
            logger.warning(
                "Completion text differs from relayed fragments for %s; keeping relayed text",
                session.placeholder.id,
            )
        full_text = session.text
        await run_in_threadpool(self.store.complete_message, session.placeholder.id, full_text)
        session.finished = True
        logger.info(
            "Completed message %s in conversation %s (%d chars)",
            session.placeholder.id,
            session.conversation_id,
            len(full_text),
        )
        channel.push({"messageId": session.placeholder.id, "content": full_text}, EVENT_DONE)

    async def _fail(self, session: StreamSession, channel: EventChannel, error: str) -> None:
        logger.warning(
            "Message %s in conversation %s failed: %s",
            session.placeholder.id,
            session.conversation_id,
            error,
        )
        await self._persist_failure(session, error)
        channel.push({"error": error}, EVENT_ERROR)

    async def _persist_failure(self, session: StreamSession, error: str) -> None:
        if session.finished:
            return
        session.finished = True
        try:
            await run_in_threadpool(self.store.fail_message, session.placeholder.id, error)
        except ValueError:
            # Completed just before the disconnect was noticed.
            logger.debug("Message %s already settled", session.placeholder.id)
        except Exception:
            logger.exception("Could not mark message %s as failed", session.placeholder.id)
        else:
            if error == CANCELLED_DETAIL:
                logger.info("Cancelled message %s after client disconnect", session.placeholder.id)
