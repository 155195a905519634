import pytest

from branchchat.errors import InvalidModelCount, MinimumResponsesRequired, ResponseNotFound
from branchchat.model import ResponseMetadata, Role
from branchchat.service.message_store import MessageStore
from branchchat.service.multi_response import MultiResponseCoordinator

MODELS = ["gpt-4o", "claude-3-5-sonnet", "gemini-2.0-flash"]


@pytest.fixture
def coordinator(store):
    return MultiResponseCoordinator(store)


@pytest.fixture
async def message(store):
    return await MessageStore(store).create("chat", Role.ASSISTANT, is_streaming=True)


@pytest.mark.parametrize("count", [0, 1, 9])
def test_model_count_bounds(count):
    with pytest.raises(InvalidModelCount):
        MultiResponseCoordinator.validate_models(["gpt-4o"] * count)


async def test_initialize_first_slot_is_primary(coordinator, message):
    multi = await coordinator.initialize(message.id, MODELS)

    assert [r.model for r in multi.responses] == MODELS
    assert [r.is_primary for r in multi.responses] == [True, False, False]
    assert multi.primary_response_id == multi.responses[0].response_id


async def test_message_mirrors_primary_and_streams_until_all_complete(store, coordinator, message):
    multi = await coordinator.initialize(message.id, MODELS)
    first, second, third = (r.response_id for r in multi.responses)

    await coordinator.write_slot(message.id, second, "partial from claude")
    m = await store.get_message(message.id)
    assert m.content == ""

    await coordinator.write_slot(message.id, first, "partial from gpt")
    assert (await store.get_message(message.id)).content == "partial from gpt"

    meta = ResponseMetadata(provider="openai", model="gpt-4o")
    await coordinator.complete_slot(message.id, first, "gpt answer", response=meta)
    await coordinator.complete_slot(message.id, second, "claude answer")
    m = await coordinator.complete_slot(message.id, third, "")
    # an empty completed slot keeps the message streaming
    assert m.is_streaming

    m = await coordinator.complete_slot(message.id, third, "gemini answer")
    assert not m.is_streaming
    assert m.content == "gpt answer"
    assert m.model == "gpt-4o"
    assert m.metadata.response.provider == "openai"


async def test_set_primary(coordinator, message):
    multi = await coordinator.initialize(message.id, MODELS)
    second = multi.responses[1].response_id
    await coordinator.complete_slot(message.id, second, "claude answer")

    m = await coordinator.set_primary(message.id, second)

    assert m.content == "claude answer"
    assert m.model == "claude-3-5-sonnet"
    assert [r.is_primary for r in m.metadata.multi_ai.responses] == [False, True, False]

    with pytest.raises(ResponseNotFound):
        await coordinator.set_primary(message.id, "nope")


async def test_delete_primary_promotes_next_live_slot(coordinator, message):
    multi = await coordinator.initialize(message.id, MODELS)
    first, second, third = (r.response_id for r in multi.responses)
    await coordinator.complete_slot(message.id, second, "claude answer")

    m = await coordinator.delete_response(message.id, first)

    assert m.metadata.multi_ai.primary_response_id == second
    assert m.content == "claude answer"
    assert [r.response_id for r in m.metadata.multi_ai.live()] == [second, third]

    with pytest.raises(MinimumResponsesRequired):
        await coordinator.delete_response(message.id, third)
    after = await coordinator.store.get_message(message.id)
    assert [r.response_id for r in after.metadata.multi_ai.live()] == [second, third]
    assert after.metadata.multi_ai.primary_response_id == second
    assert after.content == "claude answer"
    with pytest.raises(ResponseNotFound):
        await coordinator.set_primary(message.id, first)


async def test_deleting_the_last_pending_slot_ends_streaming(coordinator, message):
    multi = await coordinator.initialize(message.id, MODELS)
    first, second, third = (r.response_id for r in multi.responses)
    await coordinator.complete_slot(message.id, first, "a")
    await coordinator.complete_slot(message.id, second, "b")

    m = await coordinator.delete_response(message.id, third)

    assert not m.is_streaming
