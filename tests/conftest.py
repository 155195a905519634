import asyncio
from typing import Dict, List, Optional

import pytest

from branchchat.config import Settings
from branchchat.config.config import StreamingConfig, TitleConfig
from branchchat.database import MemoryChatStore
from branchchat.errors import ProviderRejection
from branchchat.model import NormalizedDelta, ResumeMetadata
from branchchat.providers import GeneratedImage, GeneratedVideo, Provider, ProviderKind, ProviderName, UploadCache, resolve_provider
from branchchat.service import ChatService

# script item that blocks until FakeProvider.release is set
HOLD = object()


class FakeProvider(Provider):
    """
    Scripted provider.

    ``attempts`` holds one script per generate() call (the last one repeats),
    ``resumes`` one script per resume() call. A script item is a str (text
    delta), a NormalizedDelta, an exception to raise, or HOLD.
    """

    kind = ProviderKind.OPENAI_COMPATIBLE

    def __init__(
        self,
        name: ProviderName = ProviderName.OPENAI,
        attempts: Optional[List[list]] = None,
        resumes: Optional[List[list]] = None,
        supports_resume: bool = False,
        supports_images: bool = False,
        supports_web_search: bool = False,
        supports_video: bool = False,
        image_error: Optional[Exception] = None,
        video_error: Optional[Exception] = None,
    ):
        super().__init__(name, "test-key", None, None, UploadCache())
        self.attempts = list(attempts or [["Hello", " world"]])
        self.resumes = list(resumes or [])
        self.supports_resume = supports_resume
        self.supports_images = supports_images
        self.supports_web_search = supports_web_search
        self.supports_video = supports_video
        self.image_error = image_error
        self.video_error = video_error
        self.calls: List[tuple] = []
        self.resume_calls: List[ResumeMetadata] = []
        self.image_prompts: List[str] = []
        self.video_prompts: List[str] = []
        self.release = asyncio.Event()

    async def _play(self, script):
        for item in script:
            if item is HOLD:
                await self.release.wait()
            elif isinstance(item, BaseException):
                raise item
            elif isinstance(item, NormalizedDelta):
                yield item
            else:
                yield NormalizedDelta(text=item)
        yield NormalizedDelta(is_final=True, finish_reason="stop")

    def generate(self, model, turns, options):
        self.calls.append((model, turns, options))
        script = self.attempts.pop(0) if len(self.attempts) > 1 else self.attempts[0]
        return self._play(script)

    def resume(self, model, handle):
        self.resume_calls.append(handle)
        return self._play(self.resumes.pop(0))

    async def generate_image(self, prompt):
        self.image_prompts.append(prompt)
        if self.image_error is not None:
            raise self.image_error
        return GeneratedImage(provider=self.name.value, model="fake-image", url=f"https://img.test/{len(self.image_prompts)}.png")

    async def generate_video(self, prompt):
        self.video_prompts.append(prompt)
        if self.video_error is not None:
            raise self.video_error
        return GeneratedVideo(provider=self.name.value, model="fake-video", url=f"https://video.test/{len(self.video_prompts)}.mp4")


class FakeFactory:
    """ProviderFactory stand-in: only the providers it was given hold keys."""

    def __init__(self, *providers: FakeProvider):
        self.providers: Dict[ProviderName, FakeProvider] = {p.name: p for p in providers}
        self.upload_cache = UploadCache()

    async def for_name(self, name):
        if name not in self.providers:
            raise ProviderRejection(f"No API key configured for {name.value}", name.value)
        return self.providers[name]

    async def for_model(self, model):
        return await self.for_name(resolve_provider(model))

    async def available(self, *names):
        return {n: self.providers[n] for n in names if n in self.providers}


class RecordingScheduler:
    def __init__(self):
        self.jobs = []
        self.running = False

    def start(self):
        self.running = True

    def shutdown(self):
        self.running = False

    def schedule_title(self, chat_id, func, delay_seconds):
        self.jobs.append((chat_id, func, delay_seconds))
        return f"chat_title_{chat_id}"


async def wait_until(predicate, timeout: float = 2.0):
    """Poll an async predicate until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings():
    return Settings(
        database_url="memory://",
        default_model="gpt-4o-mini",
        streaming=StreamingConfig(stop_poll_every=2, max_recoveries=2),
        titles=TitleConfig(delay_seconds=0),
    )


@pytest.fixture
def store():
    return MemoryChatStore()


@pytest.fixture
def openai_provider():
    return FakeProvider(ProviderName.OPENAI)


@pytest.fixture
def factory(openai_provider):
    return FakeFactory(openai_provider)


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def service(store, settings, factory, scheduler):
    return ChatService(store, settings, lambda user_id: factory, scheduler=scheduler)
