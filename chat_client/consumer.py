"""Consume a streamed reply from ``POST /conversations/{id}/messages``."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from chat_stream.transport import EVENT_CHUNK, EVENT_DONE, EVENT_ERROR, SSEDecoder

from .api_client import response_detail
from .errors import StreamError

logger = logging.getLogger(__name__)

CallbackResult = Union[None, Awaitable[None]]
ChunkCallback = Callable[[str], CallbackResult]
DoneCallback = Callable[[str, str], CallbackResult]
ErrorCallback = Callable[[StreamError], CallbackResult]


class StreamHandle:
    """Running consumption of one stream.

    Exactly one of ``on_done``/``on_error`` fires unless ``cancel`` is called
    first; after cancel no callback fires at all. Callbacks may be plain
    functions or coroutine functions. An exception raised by a callback is
    logged and does not end the stream early.
    """

    def __init__(self, on_chunk: ChunkCallback, on_done: DoneCallback, on_error: ErrorCallback) -> None:
        self._on_chunk = on_chunk
        self._on_done = on_done
        self._on_error = on_error
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False
        self.terminated = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.terminated)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        """Wait for the stream task, including its callbacks; never raises for cancellation."""
        if self.task is not None:
            await asyncio.wait({self.task})

    async def chunk(self, text: str) -> None:
        if self.active:
            await self._invoke(self._on_chunk, text)

    async def done(self, message_id: str, content: str) -> None:
        if self.active:
            self.terminated = True
            await self._invoke(self._on_done, message_id, content)

    async def error(self, error: StreamError) -> None:
        if self.active:
            self.terminated = True
            await self._invoke(self._on_error, error)

    @staticmethod
    async def _invoke(callback: Callable[..., CallbackResult], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Stream callback %r failed", getattr(callback, "__name__", callback))


class StreamConsumer:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    def open(
        self,
        path: str,
        body: Dict[str, Any],
        *,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> StreamHandle:
        handle = StreamHandle(on_chunk, on_done, on_error)
        handle.task = asyncio.create_task(self._consume(path, body, handle))
        return handle

    async def _consume(self, path: str, body: Dict[str, Any], handle: StreamHandle) -> None:
        try:
            async with self.client.stream(
                "POST", path, json=body, headers={"Accept": "text/event-stream"}
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    await handle.error(StreamError(response_detail(response), status_code=response.status_code))
                    return

                decoder = SSEDecoder()
                async for line in response.aiter_lines():
                    item = decoder.feed(line)
                    if item is not None:
                        await self._dispatch(handle, *item)
                    if handle.terminated:
                        return
                item = decoder.flush()
                if item is not None:
                    await self._dispatch(handle, *item)
        except httpx.HTTPError as exc:
            logger.warning("Stream %s failed: %s", path, exc)
            await handle.error(StreamError(f"Connection failed: {exc}"))
            return

        await handle.error(StreamError("Stream ended before the reply completed"))

    @staticmethod
    async def _dispatch(handle: StreamHandle, event: str, data: str) -> None:
        try:
            payload = json.loads(data)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            await handle.error(StreamError("Malformed event payload"))
            return

        if event == EVENT_CHUNK:
            await handle.chunk(payload.get("content", ""))
        elif event == EVENT_DONE:
            await handle.done(payload.get("messageId", ""), payload.get("content", ""))
        elif event == EVENT_ERROR:
            await handle.error(StreamError(payload.get("error") or "Stream failed"))
        else:
            logger.debug("Ignoring unknown event %r", event)
