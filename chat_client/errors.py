"""Client-side error types."""

from typing import Optional


class ApiError(Exception):
    """Non-2xx response (or transport failure, ``status_code == 0``) from the chat API."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}" if status_code else detail)


class StreamError(Exception):
    """Terminal failure of a streamed reply, as delivered to ``on_error``."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ConversationBusyError(RuntimeError):
    """Raised by ``send`` while a previous reply is still being streamed."""
