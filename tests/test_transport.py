import asyncio

import pytest

from chat_stream.transport import EVENT_CHUNK, EVENT_DONE, EventChannel, SSEDecoder, format_event


def test_format_event_frames_json_payload():
    assert format_event("chunk", {"content": "Hi"}) == 'event: chunk\ndata: {"content": "Hi"}\n\n'


def test_format_event_keeps_unicode():
    assert format_event("chunk", {"content": "héllo"}) == 'event: chunk\ndata: {"content": "héllo"}\n\n'


@pytest.mark.asyncio
async def test_frames_relay_producer_output_then_stop():
    async def producer(channel):
        channel.push({"content": "Hi"}, EVENT_CHUNK)
        channel.push({"messageId": "m1", "content": "Hi"}, EVENT_DONE)

    channel = EventChannel(producer)
    frames = [frame async for frame in channel.frames()]

    assert frames == [
        format_event(EVENT_CHUNK, {"content": "Hi"}),
        format_event(EVENT_DONE, {"messageId": "m1", "content": "Hi"}),
    ]
    assert channel.closed
    assert not channel.disconnected
    assert channel.push({"content": "late"}, EVENT_CHUNK) is False


@pytest.mark.asyncio
async def test_producer_exception_becomes_error_event():
    async def producer(channel):
        raise RuntimeError("kaput")

    channel = EventChannel(producer)
    frames = [frame async for frame in channel.frames()]

    assert len(frames) == 1
    assert frames[0].startswith("event: error\n")


@pytest.mark.asyncio
async def test_closing_body_early_disconnects_and_cancels_producer():
    calls = []
    release = asyncio.Event()

    async def producer(channel):
        channel.on_disconnect(lambda: calls.append("disconnect"))
        channel.push({"content": "Hi"}, EVENT_CHUNK)
        await release.wait()

    channel = EventChannel(producer)
    body = channel.frames()
    assert (await body.__anext__()).startswith("event: chunk")
    await body.aclose()

    assert channel.disconnected
    assert calls == ["disconnect"]
    await asyncio.wait({channel.task})
    assert channel.task.cancelled()
    assert channel.push({"content": "more"}, EVENT_CHUNK) is False


def test_disconnect_runs_handlers_once():
    channel = EventChannel()
    calls = []
    channel.on_disconnect(lambda: calls.append(1))

    channel.disconnect()
    channel.disconnect()

    assert calls == [1]


def test_disconnect_after_close_is_ignored():
    channel = EventChannel()
    calls = []
    channel.on_disconnect(lambda: calls.append(1))

    channel.close()
    channel.disconnect()

    assert calls == []


def test_handler_registered_after_disconnect_runs_immediately():
    channel = EventChannel()
    channel.disconnect()
    calls = []

    channel.on_disconnect(lambda: calls.append(1))

    assert calls == [1]


def test_failing_handler_does_not_stop_others():
    channel = EventChannel()
    calls = []

    def broken():
        raise RuntimeError("nope")

    channel.on_disconnect(broken)
    channel.on_disconnect(lambda: calls.append(1))
    channel.disconnect()

    assert calls == [1]


def test_decoder_dispatches_on_blank_line():
    decoder = SSEDecoder()
    lines = ["event: chunk", 'data: {"content": "Hi"}', ""]
    results = [decoder.feed(line) for line in lines]

    assert results == [None, None, ("chunk", '{"content": "Hi"}')]


def test_decoder_joins_data_lines_and_defaults_event():
    decoder = SSEDecoder()
    for line in [": keep-alive", "data: one", "data:two"]:
        assert decoder.feed(line) is None

    assert decoder.feed("\r\n") == ("message", "one\ntwo")


def test_decoder_ignores_blank_line_without_data():
    decoder = SSEDecoder()
    assert decoder.feed("event: chunk") is None
    assert decoder.feed("") is None
    assert decoder.flush() is None


def test_decoder_flush_returns_trailing_event():
    decoder = SSEDecoder()
    decoder.feed("event: done")
    decoder.feed('data: {"messageId": "m1", "content": ""}')

    assert decoder.flush() == ("done", '{"messageId": "m1", "content": ""}')


@pytest.mark.asyncio
async def test_disconnect_before_frames_starts_producer():
    seen = []

    async def producer(channel):
        channel.on_disconnect(lambda: seen.append("disconnect"))
        seen.append("pushed" if channel.push({"content": "x"}, EVENT_CHUNK) else "dropped")

    channel = EventChannel(producer)
    channel.disconnect()
    await asyncio.wait({channel.task})

    assert seen == ["disconnect", "dropped"]
    assert channel.closed
