"""Streaming message delivery for chat conversations.

This package turns a token-producing completion call into a server-sent event
stream with exactly-once persistence of the assistant reply. The primary entry
points are ``chat_stream.api.create_app`` for running the HTTP service and
``chat_stream.service.ChatService`` for embedding the engine directly into
Python code.
"""

from .config import ChatConfig, ChatLLMConfig
from .service import ChatService

__all__ = ["ChatConfig", "ChatLLMConfig", "ChatService"]
