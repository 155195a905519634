import asyncio
from types import SimpleNamespace

import httpx
import openai

from branchchat.config import Settings
from branchchat.config.config import TitleConfig
from branchchat.database.store import Collection
from branchchat.model import Chat, Message, Role
from branchchat.scheduler import SchedulerService
from branchchat.service import title_service
from branchchat.service.title_service import TitleService, truncate_title


def test_truncate_title():
    assert truncate_title("  short\n title ", 50) == "short title"
    assert truncate_title("x" * 60, 50) == "x" * 50 + "..."


async def chat_with_question(store, question, title="New Chat"):
    chat = Chat(user_id="alice", model="gpt-4o", title=title)
    message = Message(chat_id=chat.id, role=Role.USER, content=question)
    chat.active_messages = [message.id]
    await store.insert(Collection.MESSAGES, message)
    await store.insert(Collection.CHATS, chat)
    return chat.id


async def test_title_from_first_user_message(store, settings):
    chat_id = await chat_with_question(store, "How do I\nreverse a list in Python without copying it?")

    title = await TitleService(store, settings).generate_title(chat_id)

    assert title == "How do I reverse a list in Python without copying..."
    assert (await store.get_chat(chat_id)).title == title


async def test_titled_or_missing_chats_are_left_alone(store, settings):
    chat_id = await chat_with_question(store, "hello", title="Greetings")
    service = TitleService(store, settings)

    assert await service.generate_title(chat_id) is None
    assert await service.generate_title("missing") is None
    assert (await store.get_chat(chat_id)).title == "Greetings"


async def test_title_from_model(store, monkeypatch):
    settings = Settings(titles=TitleConfig(model="gpt-4o-mini"))
    chat_id = await chat_with_question(store, "explain monads")
    seen = {}

    async def fake_acompletion(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content='"Monads Explained"'))])

    monkeypatch.setattr(title_service, "acompletion", fake_acompletion)

    assert await TitleService(store, settings).generate_title(chat_id) == "Monads Explained"
    assert seen["model"] == "gpt-4o-mini"
    assert "explain monads" in seen["messages"][0]["content"]


async def test_title_model_failure_falls_back(store, monkeypatch):
    settings = Settings(titles=TitleConfig(model="gpt-4o-mini"))
    chat_id = await chat_with_question(store, "explain monads")

    async def failing(**kwargs):
        raise openai.APIConnectionError(request=httpx.Request("POST", "https://api.test"))

    monkeypatch.setattr(title_service, "acompletion", failing)

    assert await TitleService(store, settings).generate_title(chat_id) == "explain monads"


async def test_scheduler_runs_one_time_jobs():
    scheduler = SchedulerService()
    scheduler.start()
    ran = []

    async def job(chat_id):
        ran.append(chat_id)

    try:
        job_id = scheduler.schedule_title("c1", job, delay_seconds=0.05)
        assert job_id == "chat_title_c1"
        assert scheduler.get_job_status(job_id) == "scheduled"
        # same id is not scheduled twice
        scheduler.schedule_title("c1", job, delay_seconds=0.05)
        assert scheduler.pending_jobs() == [job_id]

        for _ in range(100):
            if ran:
                break
            await asyncio.sleep(0.02)
    finally:
        scheduler.shutdown()

    assert ran == ["c1"]
    assert scheduler.get_job_status(job_id) is None
