"""Exception types shared by the store, the orchestrator and the HTTP layer."""


class ChatError(Exception):
    """Base class for chat service errors."""


class ConversationNotFoundError(ChatError, LookupError):
    """Raised when a conversation id does not resolve to a stored record."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")


class ExchangeInProgressError(ChatError):
    """Raised when a conversation already has an assistant reply being streamed."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' already has a reply in progress")


class CompletionError(ChatError):
    """Upstream generation failed (HTTP error, malformed stream or timeout)."""
