import asyncio
from typing import Dict, List, Sequence

import pytest

from chat_stream.completion import Completed, CompletionEvent, Failed, Fragment
from chat_stream.store import InMemoryConversationStore


class ScriptedStream:
    """Completion stream that replays a fixed list of events.

    With ``hold=True`` it keeps the stream open after the script until cancelled,
    which is how a slow model looks to the orchestrator.
    """

    def __init__(self, events: Sequence[CompletionEvent], *, hold: bool = False) -> None:
        self.events = list(events)
        self.hold = hold
        self.cancel_calls = 0
        self.cancelled = False

    def cancel(self) -> None:
        self.cancel_calls += 1
        self.cancelled = True

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for event in self.events:
            await asyncio.sleep(0)
            if self.cancelled:
                return
            yield event
        while self.hold and not self.cancelled:
            await asyncio.sleep(0.01)


class ScriptedSource:
    """Completion source handing out one scripted stream per ``open`` call."""

    def __init__(self, *scripts: Sequence[CompletionEvent], hold: bool = False) -> None:
        self.scripts = [list(script) for script in scripts]
        self.hold = hold
        self.calls: List[Dict[str, object]] = []
        self.streams: List[ScriptedStream] = []

    def open(self, prompt: str, history: Sequence[Dict[str, str]]) -> ScriptedStream:
        self.calls.append({"prompt": prompt, "history": list(history)})
        script = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        stream = ScriptedStream(script, hold=self.hold)
        self.streams.append(stream)
        return stream


def reply(*parts: str) -> List[CompletionEvent]:
    return [*(Fragment(p) for p in parts), Completed("".join(parts))]


def failure(error: str, *parts: str) -> List[CompletionEvent]:
    return [*(Fragment(p) for p in parts), Failed(error)]


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def conversation(store):
    return store.create_conversation("Test chat")
