"""Completion sources expressed as cancellable async sequences of tagged events.

A completion stream yields any number of :class:`Fragment` events followed by
exactly one :class:`Completed` or :class:`Failed`. Cancelling a stream stops it
without a terminal event; the consumer that cancelled already knows why.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union

from .config import ChatConfig
from .errors import CompletionError
from .llm_client import ChatLLMClient, TokenStream

logger = logging.getLogger(__name__)

_END = object()


@dataclass(frozen=True)
class Fragment:
    text: str


@dataclass(frozen=True)
class Completed:
    text: str


@dataclass(frozen=True)
class Failed:
    error: str


CompletionEvent = Union[Fragment, Completed, Failed]


class CompletionStream(Protocol):
    def __aiter__(self) -> AsyncIterator[CompletionEvent]:
        ...

    def cancel(self) -> None:
        ...


class CompletionSource(Protocol):
    def open(self, prompt: str, history: Sequence[Dict[str, str]]) -> CompletionStream:
        ...


def build_prompt(
    prompt: str,
    history: Sequence[Dict[str, str]],
    *,
    system_prompt: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Assemble chat-completions messages: system prompt, prior turns, new user text."""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.extend({"role": turn["role"], "content": turn["content"]} for turn in history)
    messages.append({"role": "user", "content": prompt})
    return messages


class LLMCompletionStream:
    """Drive a blocking :class:`TokenStream` from the event loop.

    Each token is pulled on the default executor so a slow upstream never
    blocks the loop. ``first_fragment_timeout`` bounds the wait for the first
    token and ``fragment_idle_timeout`` the gap between later tokens; a value
    of 0 disables the corresponding limit.
    """

    def __init__(
        self,
        client: ChatLLMClient,
        messages: List[Dict[str, str]],
        *,
        model_kwargs: Optional[Dict[str, object]] = None,
        first_fragment_timeout: float = 0,
        fragment_idle_timeout: float = 0,
    ) -> None:
        self.client = client
        self.messages = messages
        self.model_kwargs = model_kwargs
        self.first_fragment_timeout = first_fragment_timeout
        self.fragment_idle_timeout = fragment_idle_timeout
        self.cancelled = False
        self._tokens: Optional[TokenStream] = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._tokens is not None:
            self._tokens.close()

    def __aiter__(self) -> AsyncIterator[CompletionEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[CompletionEvent]:
        loop = asyncio.get_running_loop()
        opener = functools.partial(
            self.client.stream_completion, self.messages, model_kwargs=self.model_kwargs
        )
        try:
            tokens = await loop.run_in_executor(None, opener)
        except CompletionError as exc:
            yield Failed(str(exc))
            return

        self._tokens = tokens
        if self.cancelled:
            tokens.close()
            return

        iterator = iter(tokens)
        parts: List[str] = []
        try:
            while True:
                timeout = self.fragment_idle_timeout if parts else self.first_fragment_timeout
                try:
                    token = await asyncio.wait_for(
                        loop.run_in_executor(None, next, iterator, _END),
                        timeout=timeout or None,
                    )
                except asyncio.TimeoutError:
                    label = "completion stream" if parts else "first completion fragment"
                    yield Failed(f"Timed out waiting for {label} after {timeout:.0f}s")
                    return
                except CompletionError as exc:
                    yield Failed(str(exc))
                    return
                except Exception as exc:
                    logger.exception("Unexpected failure while reading completion stream")
                    yield Failed(f"Completion stream failed: {exc}")
                    return

                if self.cancelled:
                    return
                if token is _END:
                    break
                parts.append(token)
                yield Fragment(token)
        finally:
            tokens.close()

        yield Completed("".join(parts))


class LLMCompletionSource:
    """Completion source backed by an OpenAI-compatible streaming endpoint."""

    def __init__(self, config: Optional[ChatConfig] = None, *, client: Optional[ChatLLMClient] = None) -> None:
        self.config = config or ChatConfig()
        self.client = client or ChatLLMClient(self.config.llm)

    def open(self, prompt: str, history: Sequence[Dict[str, str]]) -> LLMCompletionStream:
        messages = build_prompt(prompt, history, system_prompt=self.config.system_prompt)
        return LLMCompletionStream(
            self.client,
            messages,
            model_kwargs=self.config.model_kwargs,
            first_fragment_timeout=self.config.first_fragment_timeout,
            fragment_idle_timeout=self.config.fragment_idle_timeout,
        )
