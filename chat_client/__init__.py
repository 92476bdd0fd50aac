"""Async client for the streaming chat server.

``ChatApiClient`` wraps the conversation endpoints, ``StreamConsumer`` reads a
streamed reply, and ``ConversationViewModel`` keeps one conversation's view in
step with both.
"""

from .api_client import ChatApiClient
from .consumer import StreamConsumer, StreamHandle
from .conversation_list import ConversationListModel
from .errors import ApiError, ConversationBusyError, StreamError
from .models import ConversationRecord, ViewEntry
from .view_model import ConversationViewModel, ViewState

__all__ = [
    "ApiError",
    "ChatApiClient",
    "ConversationBusyError",
    "ConversationListModel",
    "ConversationRecord",
    "ConversationViewModel",
    "StreamConsumer",
    "StreamError",
    "StreamHandle",
    "ViewEntry",
    "ViewState",
]
