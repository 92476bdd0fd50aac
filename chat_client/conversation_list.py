"""Sidebar state: every conversation, most recently updated first."""

from __future__ import annotations

from typing import Callable, List, Optional

from .api_client import ChatApiClient
from .models import ConversationRecord
from .view_model import ConversationViewModel


class ConversationListModel:
    def __init__(self, api: ChatApiClient) -> None:
        self.api = api
        self.conversations: List[ConversationRecord] = []

    async def refresh(self) -> List[ConversationRecord]:
        self.conversations = await self.api.list_conversations()
        self._sort()
        return self.conversations

    async def create(self, title: Optional[str] = None) -> ConversationRecord:
        conversation = await self.api.create_conversation(title)
        self.apply_update(conversation)
        return conversation

    async def delete(self, conversation_id: str) -> None:
        await self.api.delete_conversation(conversation_id)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]

    def apply_update(self, conversation: ConversationRecord) -> None:
        """Replace (or insert) a conversation and keep the list ordered."""
        self.conversations = [c for c in self.conversations if c.id != conversation.id]
        self.conversations.append(conversation)
        self._sort()

    def watch(self, view_model: ConversationViewModel) -> Callable[[], None]:
        return view_model.subscribe(self.apply_update)

    def _sort(self) -> None:
        self.conversations.sort(key=lambda c: c.updated_at, reverse=True)
