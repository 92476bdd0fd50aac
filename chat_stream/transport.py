"""Server-sent event framing and the per-request push channel."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

EVENT_CHUNK = "chunk"
EVENT_DONE = "done"
EVENT_ERROR = "error"

Producer = Callable[["EventChannel"], Awaitable[None]]
DisconnectHandler = Callable[[], None]


def format_event(kind: str, payload: Any) -> str:
    """Frame one event as ``event:``/``data:`` lines terminated by a blank line."""
    data = json.dumps(payload, ensure_ascii=False)
    return f"event: {kind}\ndata: {data}\n\n"


class EventChannel:
    """One-directional push channel backing a single streaming HTTP response.

    The producer coroutine is started when the response body is first iterated
    and receives the channel so it can ``push`` events and ``close`` it. If the
    body iteration ends before ``close`` (the client went away), the disconnect
    handlers run exactly once and the producer task is cancelled. If the client
    leaves before the body is read at all, ``disconnect`` starts the producer so
    it observes the disconnect on registration. A disconnect noticed after
    ``close`` is ignored.
    """

    def __init__(self, producer: Optional[Producer] = None) -> None:
        self._producer = producer
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._handlers: List[DisconnectHandler] = []
        self._task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False
        self._disconnected = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def push(self, payload: Any, event: str) -> bool:
        """Queue an event; returns False once the channel is closed or disconnected."""
        if self._closed or self._disconnected:
            logger.debug("Dropping %s event on inactive channel", event)
            return False
        self._queue.put_nowait(format_event(event, payload))
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        """Register ``handler``; it runs at once if the client is already gone."""
        if self._disconnected:
            if not self._closed:
                self._call(handler)
            return
        self._handlers.append(handler)

    def disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        if self._closed:
            return

        logger.info("Client disconnected before the stream finished")
        for handler in self._handlers:
            self._call(handler)
        if self._task is None:
            # The body was never read; run the producer so it can settle its work.
            self.start()
        elif self._started and not self._task.done():
            self._task.cancel()

    @staticmethod
    def _call(handler: DisconnectHandler) -> None:
        try:
            handler()
        except Exception:
            logger.exception("Disconnect handler failed")

    def start(self) -> None:
        """Start the producer task unless it already exists."""
        if self._producer is not None and self._task is None:
            self._task = asyncio.create_task(self._run_producer(self._producer))

    async def frames(self) -> AsyncIterator[str]:
        self.start()

        finished = False
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    finished = True
                    return
                yield frame
        finally:
            if not finished:
                self.disconnect()

    async def _run_producer(self, producer: Producer) -> None:
        self._started = True
        try:
            await producer(self)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stream producer failed")
            self.push({"error": "Internal error while streaming the response"}, EVENT_ERROR)
        finally:
            self.close()


class EventStreamResponse(StreamingResponse):
    """``text/event-stream`` response that reports every early exit to its channel."""

    def __init__(self, channel: EventChannel) -> None:
        super().__init__(
            channel.frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )
        self.channel = channel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # No-op once the channel closed normally.
            self.channel.disconnect()


def event_stream_response(channel: EventChannel) -> EventStreamResponse:
    return EventStreamResponse(channel)


class SSEDecoder:
    """Incremental parser turning event-stream lines into ``(event, data)`` pairs."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[Tuple[str, str]]:
        """Consume one line (without its terminator); return an event when one completes."""
        line = line.rstrip("\r\n")
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def flush(self) -> Optional[Tuple[str, str]]:
        event, data = self._event, self._data
        self._event, self._data = None, []
        if not data:
            return None
        return event or "message", "\n".join(data)
