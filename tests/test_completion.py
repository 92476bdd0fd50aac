import threading

import pytest

from chat_stream.completion import (
    Completed,
    Failed,
    Fragment,
    LLMCompletionSource,
    LLMCompletionStream,
    build_prompt,
)
from chat_stream.config import ChatConfig
from chat_stream.errors import CompletionError


class FakeTokens:
    def __init__(self, tokens, *, block=None, error=None):
        self.tokens = tokens
        self.block = block
        self.error = error
        self.closed = False

    def __iter__(self):
        yield from self.tokens
        if self.error is not None:
            raise self.error
        if self.block is not None:
            self.block.wait(2)

    def close(self):
        self.closed = True
        if self.block is not None:
            self.block.set()


class FakeClient:
    def __init__(self, tokens=None, error=None):
        self.tokens = tokens
        self.error = error
        self.calls = []

    def stream_completion(self, messages, *, model_kwargs=None):
        self.calls.append({"messages": messages, "model_kwargs": model_kwargs})
        if self.error is not None:
            raise self.error
        return self.tokens


async def collect(stream):
    return [event async for event in stream]


def test_build_prompt_orders_system_history_and_prompt():
    history = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]

    assert build_prompt("c", history, system_prompt="be brief") == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
    ]
    assert build_prompt("c", [], system_prompt="") == [{"role": "user", "content": "c"}]


@pytest.mark.asyncio
async def test_tokens_become_fragments_then_completed():
    tokens = FakeTokens(["Hi", " there"])
    stream = LLMCompletionStream(FakeClient(tokens), [])

    assert await collect(stream) == [Fragment("Hi"), Fragment(" there"), Completed("Hi there")]
    assert tokens.closed


@pytest.mark.asyncio
async def test_open_failure_is_reported_as_failed():
    stream = LLMCompletionStream(FakeClient(error=CompletionError("endpoint down")), [])

    assert await collect(stream) == [Failed("endpoint down")]


@pytest.mark.asyncio
async def test_mid_stream_error_is_reported_as_failed():
    tokens = FakeTokens(["Hi"], error=CompletionError("stream broke"))
    stream = LLMCompletionStream(FakeClient(tokens), [])

    assert await collect(stream) == [Fragment("Hi"), Failed("stream broke")]


@pytest.mark.asyncio
async def test_first_fragment_timeout():
    tokens = FakeTokens([], block=threading.Event())
    stream = LLMCompletionStream(FakeClient(tokens), [], first_fragment_timeout=0.05)

    events = await collect(stream)

    assert len(events) == 1
    assert isinstance(events[0], Failed)
    assert "first completion fragment" in events[0].error
    assert tokens.closed


@pytest.mark.asyncio
async def test_idle_timeout_after_first_fragment():
    tokens = FakeTokens(["Hi"], block=threading.Event())
    stream = LLMCompletionStream(FakeClient(tokens), [], fragment_idle_timeout=0.05)

    events = await collect(stream)

    assert events[0] == Fragment("Hi")
    assert isinstance(events[1], Failed)
    assert "completion stream" in events[1].error


@pytest.mark.asyncio
async def test_cancel_before_iteration_yields_nothing():
    tokens = FakeTokens(["Hi"])
    stream = LLMCompletionStream(FakeClient(tokens), [])
    stream.cancel()
    stream.cancel()

    assert await collect(stream) == []
    assert tokens.closed


@pytest.mark.asyncio
async def test_source_applies_config():
    client = FakeClient(FakeTokens(["ok"]))
    config = ChatConfig(system_prompt="sys", model_kwargs={"temperature": 0}, first_fragment_timeout=3)
    source = LLMCompletionSource(config, client=client)

    stream = source.open("hello", [{"role": "assistant", "content": "earlier"}])

    assert stream.first_fragment_timeout == 3
    assert await collect(stream) == [Fragment("ok"), Completed("ok")]
    assert client.calls[0] == {
        "messages": [
            {"role": "system", "content": "sys"},
            {"role": "assistant", "content": "earlier"},
            {"role": "user", "content": "hello"},
        ],
        "model_kwargs": {"temperature": 0},
    }
