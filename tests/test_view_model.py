import httpx
import pytest

from chat_client.api_client import ChatApiClient
from chat_client.conversation_list import ConversationListModel
from chat_client.errors import ApiError, ConversationBusyError
from chat_client.view_model import ConversationViewModel, ViewState
from chat_stream.api import create_app
from chat_stream.store import InMemoryConversationStore
from conftest import ScriptedSource, failure, reply


def make_api(*scripts):
    store = InMemoryConversationStore()
    app = create_app(store=store, source=ScriptedSource(*scripts))
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return ChatApiClient(client=http), store


@pytest.mark.asyncio
async def test_send_confirms_optimistic_entry_and_appends_reply():
    api, store = make_api(reply("Hi", " there"))
    conversation = await api.create_conversation("Chat")
    view = ConversationViewModel(conversation.id, api)
    await view.load()
    updates = []
    view.subscribe(updates.append)

    entry = view.send("Hello")
    handle = view.stream

    assert entry.id.startswith("temp-")
    assert entry.optimistic and entry.status == "sending"
    assert view.entries == [entry]
    assert view.state is ViewState.AWAITING_USER_CONFIRM

    await handle.wait()

    user, assistant = view.entries
    assert user.id.startswith("user-")
    assert (user.content, user.status, user.optimistic) == ("Hello", "sent", False)
    stored = store.list_messages(conversation.id)
    assert (assistant.id, assistant.role, assistant.content) == (stored[1].id, "assistant", "Hi there")
    assert view.streaming_text == ""
    assert view.state is ViewState.IDLE
    assert [u.id for u in updates] == [conversation.id]
    assert updates[0].updated_at > conversation.updated_at


@pytest.mark.asyncio
async def test_chunks_accumulate_in_streaming_text():
    api, _ = make_api(reply("x"))
    view = ConversationViewModel("c1", api)
    view.state = ViewState.AWAITING_USER_CONFIRM

    view._on_chunk("Hi")
    view._on_chunk(" there")

    assert view.state is ViewState.STREAMING
    assert view.streaming_text == "Hi there"
    assert view.entries == []


@pytest.mark.asyncio
async def test_send_rejected_while_busy():
    api, _ = make_api(reply("Hi"))
    conversation = await api.create_conversation()
    view = ConversationViewModel(conversation.id, api)

    view.send("first")
    with pytest.raises(ConversationBusyError):
        view.send("second")
    await view.stream.wait()

    assert [e.content for e in view.entries] == ["first", "Hi"]


@pytest.mark.asyncio
async def test_send_rejects_empty_text():
    api, _ = make_api(reply("Hi"))
    view = ConversationViewModel("c1", api)

    with pytest.raises(ValueError):
        view.send("   ")
    assert view.state is ViewState.IDLE


@pytest.mark.asyncio
async def test_failure_marks_entry_and_retry_sends_new_pair():
    api, store = make_api(failure("model exploded", "Hi"), reply("Recovered"))
    conversation = await api.create_conversation()
    view = ConversationViewModel(conversation.id, api)

    view.send("Hello")
    await view.stream.wait()

    (failed,) = view.entries
    assert (failed.status, failed.error_message) == ("failed", "model exploded")
    assert view.last_error == "model exploded"
    assert view.streaming_text == ""
    assert view.state is ViewState.IDLE

    retried = view.retry(failed)
    assert retried.id != failed.id
    assert view.last_error is None
    await view.stream.wait()

    assert [(e.role, e.content, e.status) for e in view.entries] == [
        ("user", "Hello", "sent"),
        ("assistant", "Recovered", "sent"),
    ]
    stored = store.list_messages(conversation.id)
    assert [(m.role, m.status) for m in stored] == [
        ("user", "sent"),
        ("assistant", "failed"),
        ("user", "sent"),
        ("assistant", "sent"),
    ]


@pytest.mark.asyncio
async def test_retry_only_accepts_failed_user_entries():
    api, _ = make_api(reply("Hi"))
    conversation = await api.create_conversation()
    view = ConversationViewModel(conversation.id, api)
    view.send("Hello")
    await view.stream.wait()

    with pytest.raises(ValueError):
        view.retry(view.entries[0])


@pytest.mark.asyncio
async def test_unknown_conversation_surfaces_error():
    api, _ = make_api(reply("Hi"))
    view = ConversationViewModel("missing", api)

    view.send("Hello")
    await view.stream.wait()

    assert view.entries[0].status == "failed"
    assert view.last_error == "Conversation not found"
    view.dismiss_error()
    assert view.last_error is None


@pytest.mark.asyncio
async def test_load_and_close():
    api, store = make_api(reply("Hi"))
    conversation = await api.create_conversation("Loaded")
    user, placeholder = store.start_exchange(conversation.id, "Earlier")
    store.complete_message(placeholder.id, "Answer")
    view = ConversationViewModel(conversation.id, api)

    await view.load()

    assert view.conversation.title == "Loaded"
    assert [e.id for e in view.entries] == [user.id, placeholder.id]

    view.send("Hello")
    handle = view.stream
    view.close()
    await handle.wait()

    assert handle.cancelled
    assert view.state is ViewState.IDLE
    assert [e.id for e in view.entries] == [user.id, placeholder.id]


@pytest.mark.asyncio
async def test_rename_trims_and_publishes():
    api, _ = make_api(reply("Hi"))
    conversation = await api.create_conversation("Old")
    view = ConversationViewModel(conversation.id, api)
    await view.load()
    updates = []
    unsubscribe = view.subscribe(updates.append)

    assert (await view.rename("  ")).title == "Old"
    assert (await view.rename("Old")).title == "Old"
    assert updates == []

    renamed = await view.rename("  New  ")
    assert renamed.title == "New"
    assert [u.title for u in updates] == ["New"]

    unsubscribe()
    await view.rename("Newer")
    assert len(updates) == 1


@pytest.mark.asyncio
async def test_api_client_raises_api_error():
    api, _ = make_api(reply("Hi"))

    with pytest.raises(ApiError) as excinfo:
        await api.get_conversation("missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.detail == "Conversation not found"


@pytest.mark.asyncio
async def test_conversation_list_tracks_view_updates():
    api, _ = make_api(reply("Hi"))
    conversations = ConversationListModel(api)
    first = await conversations.create("first")
    second = await conversations.create("second")
    assert [c.id for c in conversations.conversations] == [second.id, first.id]

    view = ConversationViewModel(first.id, api)
    await view.load()
    conversations.watch(view)
    view.send("Hello")
    await view.stream.wait()

    assert [c.id for c in conversations.conversations] == [first.id, second.id]

    await conversations.refresh()
    assert [c.id for c in conversations.conversations] == [first.id, second.id]

    await conversations.delete(second.id)
    assert [c.id for c in conversations.conversations] == [first.id]
    assert [c.id for c in await api.list_conversations()] == [first.id]


@pytest.mark.asyncio
async def test_finished_exchange_publishes_without_prior_load():
    api, _ = make_api(reply("Hi"))
    conversations = ConversationListModel(api)
    first = await conversations.create("first")
    second = await conversations.create("second")

    view = ConversationViewModel(first.id, api)
    conversations.watch(view)
    view.send("Hello")
    await view.stream.wait()

    assert view.conversation is not None
    assert view.conversation.updated_at > first.updated_at
    assert [c.id for c in conversations.conversations] == [first.id, second.id]


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_the_view():
    api, _ = make_api(reply("Hi"))
    conversation = await api.create_conversation()
    view = ConversationViewModel(conversation.id, api)
    await view.load()

    def broken(_):
        raise RuntimeError("listener blew up")

    view.subscribe(broken)
    view.send("Hello")
    handle = view.stream
    await handle.wait()

    assert handle.task.exception() is None
    assert view.state is ViewState.IDLE
    assert [e.status for e in view.entries] == ["sent", "sent"]
    assert view.last_error is None
