import pytest

from branchchat.errors import InvalidOperation, NotFound, VersionNotFound
from branchchat.model import ResponseMetadata, Role
from branchchat.service.message_store import MessageStore
from branchchat.service.multi_response import MultiResponseCoordinator


@pytest.fixture
def messages(store):
    return MessageStore(store)


async def test_retry_records_the_first_version(messages):
    m = await messages.create("chat", Role.ASSISTANT, content="first answer", model="gpt-4o")

    version_id = await messages.start_new_version(m.id, model="claude-3-5-sonnet")

    m = await messages.get(m.id)
    assert m.content == ""
    assert m.is_streaming
    assert m.model == "claude-3-5-sonnet"
    assert [v.content for v in m.message_versions] == ["first answer", ""]
    assert m.active_version().version_id == version_id


async def test_content_mirrors_the_active_version(messages):
    m = await messages.create("chat", Role.ASSISTANT, content="one", model="gpt-4o")
    await messages.start_new_version(m.id)
    await messages.set_content(m.id, "tw", is_streaming=True)
    await messages.finalize(m.id, "two", response=ResponseMetadata(provider="openai", model="gpt-4o"))

    m = await messages.get(m.id)
    first, second = m.message_versions
    assert second.content == "two"
    assert second.metadata.provider == "openai"
    assert not m.is_streaming

    m = await messages.switch_version(m.id, first.version_id)
    assert m.content == "one"
    assert [v.is_active for v in m.message_versions] == [True, False]

    await messages.set_content(m.id, "one, revised")
    m = await messages.get(m.id)
    assert m.message_versions[0].content == "one, revised"
    assert m.message_versions[1].content == "two"


async def test_switch_to_unknown_version(messages):
    m = await messages.create("chat", Role.ASSISTANT, content="x")
    await messages.start_new_version(m.id)
    with pytest.raises(VersionNotFound):
        await messages.switch_version(m.id, "nope")


async def test_only_single_assistant_messages_can_be_retried(store, messages):
    user = await messages.create("chat", Role.USER, content="q")
    with pytest.raises(InvalidOperation):
        await messages.start_new_version(user.id)

    multi = await messages.create("chat", Role.ASSISTANT)
    await MultiResponseCoordinator(store).initialize(multi.id, ["gpt-4o", "claude-3-5-sonnet"])
    with pytest.raises(InvalidOperation):
        await messages.start_new_version(multi.id)


async def test_set_image(messages):
    m = await messages.create("chat", Role.ASSISTANT, is_streaming=True)
    await messages.set_image(m.id, "a cat", "https://img.test/cat.png", "![a cat](https://img.test/cat.png)")

    m = await messages.get(m.id)
    assert not m.is_streaming
    assert m.metadata.image_prompt == "a cat"
    assert m.metadata.image_url == "https://img.test/cat.png"


async def test_set_video(messages):
    m = await messages.create("chat", Role.ASSISTANT, is_streaming=True)
    response = ResponseMetadata(provider="google", model="veo-3.0-generate-001")
    await messages.set_video(m.id, "waves", "https://video.test/w.mp4", "[Generated Video](https://video.test/w.mp4)", response=response)

    m = await messages.get(m.id)
    assert not m.is_streaming
    assert m.metadata.video_prompt == "waves"
    assert m.metadata.video_url == "https://video.test/w.mp4"
    assert m.metadata.response.provider == "google"


async def test_missing_message(messages):
    with pytest.raises(NotFound):
        await messages.get("nope")
    with pytest.raises(NotFound):
        await messages.set_content("nope", "x")
