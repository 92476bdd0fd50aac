"""High level chat service used by the HTTP layer and direct Python consumers."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool

from .completion import CompletionSource, LLMCompletionSource
from .config import ChatConfig
from .models import Conversation, Message
from .orchestrator import StreamOrchestrator
from .store import ConversationStore, InMemoryConversationStore
from .transport import EventChannel

logger = logging.getLogger(__name__)

INTERRUPTED_DETAIL = "interrupted"


class ChatService:
    """Conversation CRUD plus streamed message exchanges."""

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        store: Optional[ConversationStore] = None,
        source: Optional[CompletionSource] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.store = store or InMemoryConversationStore(default_title=self.config.default_title)
        self.source = source or LLMCompletionSource(self.config)
        self.orchestrator = StreamOrchestrator(self.store, self.source, self.config)

    def recover(self) -> int:
        """Fail placeholders left ``sending`` by a previous process."""
        count = self.store.fail_pending(INTERRUPTED_DETAIL)
        if count:
            logger.warning("Marked %d interrupted message(s) as failed", count)
        return count

    async def list_conversations(self) -> List[Conversation]:
        return await run_in_threadpool(self.store.list_conversations)

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        conversation = await run_in_threadpool(self.store.create_conversation, title)
        logger.info("Created conversation %s", conversation.id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await run_in_threadpool(self.store.get_conversation, conversation_id)

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        return await run_in_threadpool(self.store.rename_conversation, conversation_id, title)

    async def delete_conversation(self, conversation_id: str) -> None:
        await run_in_threadpool(self.store.delete_conversation, conversation_id)
        logger.info("Deleted conversation %s", conversation_id)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return await run_in_threadpool(self.store.list_messages, conversation_id)

    async def stream_chat(self, conversation_id: str, content: str) -> EventChannel:
        """Persist the exchange and return the channel that will stream the reply."""
        session = await self.orchestrator.begin(conversation_id, content)
        return self.orchestrator.channel_for(session)
