from datetime import datetime, timedelta

import pytest

from conftest import FakeFactory, FakeProvider
from branchchat.database import SqlChatStore
from branchchat.database.db.session import create_engine, make_async_url
from branchchat.database.store import Collection
from branchchat.errors import NotFound
from branchchat.model import (
    AISettings,
    Branch,
    Chat,
    Message,
    MultiAIResponse,
    ResponseSlot,
    Role,
    StreamingSession,
    StreamStatus,
)
from branchchat.service import ChatService


@pytest.fixture
async def sql_store(tmp_path):
    store = SqlChatStore(create_engine(f"sqlite:///{tmp_path / 'chat.db'}"))
    await store.create_tables()
    yield store
    await store.close()


def test_make_async_url():
    assert make_async_url("postgresql://u:p@db/chat") == "postgresql+asyncpg://u:p@db/chat"
    assert make_async_url("sqlite:///./chat.db") == "sqlite+aiosqlite:///./chat.db"
    assert make_async_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


async def test_chat_round_trip(sql_store):
    chat = Chat(user_id="alice", model="gpt-4o", ai_settings=AISettings(temperature=0.3))
    chat.base_messages = ["m1"]
    chat.active_messages = ["m1", "m2"]
    await sql_store.insert(Collection.CHATS, chat)

    loaded = await sql_store.get_chat(chat.id)

    assert loaded.base_messages == ["m1"]
    assert loaded.active_messages == ["m1", "m2"]
    assert loaded.ai_settings.temperature == 0.3
    assert await sql_store.get_chat("missing") is None


async def test_update_and_patch(sql_store):
    chat = Chat(user_id="alice", model="gpt-4o")
    await sql_store.insert(Collection.CHATS, chat)

    def rename(doc):
        doc.title = "Renamed"
        doc.active_messages.append("m1")

    updated = await sql_store.update_chat(chat.id, rename)
    assert updated.title == "Renamed"

    await sql_store.patch(Collection.CHATS, chat.id, model="claude-3-5-sonnet")
    loaded = await sql_store.get_chat(chat.id)
    assert (loaded.title, loaded.model, loaded.active_messages) == ("Renamed", "claude-3-5-sonnet", ["m1"])

    with pytest.raises(NotFound):
        await sql_store.update_chat("missing", rename)


async def test_delete(sql_store):
    chat = Chat(user_id="alice", model="gpt-4o")
    await sql_store.insert(Collection.CHATS, chat)

    assert await sql_store.delete(Collection.CHATS, chat.id)
    assert not await sql_store.delete(Collection.CHATS, chat.id)
    assert await sql_store.get_chat(chat.id) is None


async def test_list_chats_newest_first(sql_store):
    now = datetime.utcnow()
    older = Chat(user_id="alice", model="gpt-4o", updated_at=now - timedelta(hours=1))
    newer = Chat(user_id="alice", model="gpt-4o", updated_at=now)
    other = Chat(user_id="bob", model="gpt-4o")
    for chat in (older, newer, other):
        await sql_store.insert(Collection.CHATS, chat)

    assert [c.id for c in await sql_store.list_chats("alice")] == [newer.id, older.id]


async def test_list_messages_by_branch(sql_store):
    now = datetime.utcnow()
    main = Branch(chat_id="c1", is_main=True)
    fork = Branch(chat_id="c1", name="Branch 2")
    await sql_store.insert(Collection.BRANCHES, main)
    await sql_store.insert(Collection.BRANCHES, fork)

    first = Message(chat_id="c1", branch_id=main.id, role=Role.USER, content="a", timestamp=now)
    second = Message(chat_id="c1", branch_id=fork.id, role=Role.USER, content="b", timestamp=now + timedelta(seconds=1))
    for message in (second, first):
        await sql_store.insert(Collection.MESSAGES, message)

    assert [m.content for m in await sql_store.list_messages("c1")] == ["a", "b"]
    assert [m.content for m in await sql_store.list_messages("c1", fork.id)] == ["b"]
    assert {b.name for b in await sql_store.list_branches("c1")} == {"Main", "Branch 2"}


async def test_message_metadata_round_trip(sql_store):
    message = Message(chat_id="c1", role=Role.ASSISTANT, is_streaming=True)
    message.metadata.multi_ai = MultiAIResponse(
        selected_models=["gpt-4o", "claude-3-5-sonnet"],
        responses=[ResponseSlot(model="gpt-4o", content="hi", is_primary=True)],
    )
    await sql_store.insert(Collection.MESSAGES, message)

    loaded = await sql_store.get_message(message.id)

    assert loaded.role == Role.ASSISTANT
    assert loaded.is_streaming
    assert loaded.metadata.multi_ai.selected_models == ["gpt-4o", "claude-3-5-sonnet"]
    assert loaded.metadata.multi_ai.responses[0].content == "hi"


async def test_list_sessions_filters(sql_store):
    now = datetime.utcnow()
    old = StreamingSession(
        message_id="m1", user_id="alice", provider="openai", model="gpt-4o",
        created_at=now - timedelta(days=2),
    )
    resumed = StreamingSession(
        message_id="m2", user_id="alice", provider="openai", model="gpt-4o",
        created_at=now - timedelta(days=2), last_resumed_at=now,
    )
    fresh = StreamingSession(
        message_id="m3", user_id="bob", provider="google", model="gemini-2.0-flash",
        status=StreamStatus.STREAMING, created_at=now,
    )
    for session in (old, resumed, fresh):
        await sql_store.insert(Collection.SESSIONS, session)

    assert {s.message_id for s in await sql_store.list_sessions(user_id="alice")} == {"m1", "m2"}
    assert [s.session_id for s in await sql_store.list_sessions(message_id="m3")] == [fresh.session_id]
    recent = await sql_store.list_sessions(since=now - timedelta(hours=1))
    assert {s.message_id for s in recent} == {"m2", "m3"}
    assert recent[-1].status == StreamStatus.STREAMING


async def test_chat_service_on_sql(sql_store, settings, scheduler):
    provider = FakeProvider()
    service = ChatService(sql_store, settings, lambda user_id: FakeFactory(provider), scheduler=scheduler)
    chat = await service.create_chat("alice")

    sent = await service.send_message("alice", chat.id, "one")
    await service.orchestrator.wait(sent.assistant_message_id)
    provider.attempts = [["forked"]]
    edit = await service.edit_message("alice", sent.user_message_id, "uno")
    await service.orchestrator.wait(edit.assistant_message_id)

    assert [m.content for m in await service.get_transcript("alice", chat.id)] == ["uno", "forked"]
    assert len(await service.list_branches("alice", chat.id)) == 2
    session = (await sql_store.list_sessions(message_id=edit.assistant_message_id))[0]
    assert session.is_complete
