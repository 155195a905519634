# branchchat/service/orchestrator.py

"""
Streaming Orchestrator

Drives generations and applies their deltas to the stored message:

    CREATED -> STREAMING -> COMPLETED | STOPPED | FAILED
    STREAMING -> RESUMING -> STREAMING

- one asyncio task per generation (a multi-model message runs its slots
  concurrently inside one task)
- the stop signal is a per-message asyncio.Event, checked between deltas,
  plus the persisted ``is_stopped`` flag re-read every few deltas
- transport errors resume (when the provider can) or restart, bounded by
  ``streaming.max_recoveries``
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from branchchat.config import Settings
from branchchat.database.store import ChatStore, Collection
from branchchat.errors import (
    ChatError,
    ImageGenerationFailed,
    VideoGenerationFailed,
    NotFound,
    ProviderRejection,
    ProviderTransportError,
)
from branchchat.model import (
    AISettings,
    Citation,
    Message,
    NormalizedDelta,
    ResponseMetadata,
    ResumeMetadata,
    Role,
    StreamingSession,
    StreamStatus,
)
from branchchat.providers.base import ChatTurn, GenerationOptions, Provider, resolve_provider
from branchchat.providers.images import ImageGenerator
from branchchat.providers.videos import VideoGenerator
from branchchat.providers.websearch import WebSearch
from branchchat.service.branch_manager import BranchManager
from branchchat.service.commands import Command
from branchchat.service.message_store import MessageStore
from branchchat.service.multi_response import MultiResponseCoordinator

logger = logging.getLogger(__name__)

_END = object()
_STOP = object()

IMAGE_FAILED = "Sorry, I couldn't generate an image for that prompt. Please try again later."
VIDEO_FAILED = "Sorry, I couldn't generate the video. Please try again."


def build_options(settings: Settings, ai_settings: Optional[AISettings]) -> GenerationOptions:
    """Configured defaults overlaid with the chat's own settings."""
    defaults = settings.ai_defaults
    options = GenerationOptions(
        temperature=defaults.temperature,
        top_p=defaults.top_p,
        max_tokens=defaults.max_tokens,
        frequency_penalty=0.0,
        presence_penalty=0.0,
        system_prompt=defaults.system_prompt,
    )
    if ai_settings is not None:
        overrides = ai_settings.model_dump(exclude_none=True)
        options = options.model_copy(update=overrides)
    return options


def build_turns(history: List[Message]) -> List[ChatTurn]:
    turns = []
    for message in history:
        if message.is_streaming and not message.content:
            continue
        if not message.content and not message.attachments:
            continue
        turns.append(
            ChatTurn(
                role=message.role.value,
                content=message.content,
                attachments=message.attachments if message.role == Role.USER else [],
            )
        )
    return turns


# =========================================================
# Sinks: where a generation's text lands
# =========================================================

class MessageSink:
    def __init__(self, messages: MessageStore, message_id: str):
        self.messages = messages
        self.message_id = message_id

    async def write(self, content: str) -> None:
        await self.messages.set_content(self.message_id, content, is_streaming=True)

    async def finish(
        self,
        content: str,
        response: ResponseMetadata,
        citations: Optional[List[Citation]] = None,
        search_query: Optional[str] = None,
    ) -> None:
        await self.messages.finalize(
            self.message_id,
            content,
            response=response,
            citations=citations,
            search_query=search_query,
        )

    async def image(self, prompt: str, url: Optional[str], content: str, response: ResponseMetadata) -> None:
        await self.messages.set_image(self.message_id, prompt, url, content, response=response)

    async def video(self, prompt: str, url: str, content: str, response: ResponseMetadata) -> None:
        await self.messages.set_video(self.message_id, prompt, url, content, response=response)


class SlotSink:
    def __init__(self, coordinator: MultiResponseCoordinator, message_id: str, response_id: str):
        self.coordinator = coordinator
        self.message_id = message_id
        self.response_id = response_id

    async def write(self, content: str) -> None:
        await self.coordinator.write_slot(self.message_id, self.response_id, content)

    async def finish(
        self,
        content: str,
        response: ResponseMetadata,
        citations: Optional[List[Citation]] = None,
        search_query: Optional[str] = None,
    ) -> None:
        await self.coordinator.complete_slot(
            self.message_id, self.response_id, content, response=response, citations=citations
        )

    # slots have no media fields, only the markdown content
    async def image(self, prompt: str, url: Optional[str], content: str, response: ResponseMetadata) -> None:
        await self.finish(content, response)

    async def video(self, prompt: str, url: str, content: str, response: ResponseMetadata) -> None:
        await self.finish(content, response)


@dataclass
class GenerationJob:
    chat_id: str
    user_id: str
    message_id: str
    model: str
    turns: List[ChatTurn]
    options: GenerationOptions
    factory: Any
    sink: Any
    response_id: Optional[str] = None
    command: Optional[Command] = None
    command_text: str = ""
    # recovery of an interrupted generation
    session: Optional[StreamingSession] = None
    initial_text: str = ""
    resume_from: Optional[ResumeMetadata] = None
    restart: bool = False


@dataclass
class _Run:
    job: GenerationJob
    session: StreamingSession
    provider: Optional[Provider] = None
    text: str = ""
    handle: Optional[ResumeMetadata] = None
    citations: List[Citation] = field(default_factory=list)
    finish_reason: Optional[str] = None
    pending_reset: bool = False
    chunks: int = 0
    recoveries: int = 0
    started: float = field(default_factory=time.monotonic)


class StreamOrchestrator:
    def __init__(
        self,
        store: ChatStore,
        messages: MessageStore,
        branches: BranchManager,
        coordinator: MultiResponseCoordinator,
        settings: Settings,
    ):
        self.store = store
        self.messages = messages
        self.branches = branches
        self.coordinator = coordinator
        self.settings = settings
        self._signals: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # =====================================================
    # Task bookkeeping
    # =====================================================

    def _signal(self, message_id: str) -> asyncio.Event:
        if message_id not in self._signals:
            self._signals[message_id] = asyncio.Event()
        return self._signals[message_id]

    def _track(self, message_id: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks[message_id] = task

        def done(t: asyncio.Task) -> None:
            if self._tasks.get(message_id) is t:
                self._tasks.pop(message_id, None)
                self._signals.pop(message_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"❌ Generation task for {message_id} crashed: {t.exception()!r}")

        task.add_done_callback(done)
        return task

    def is_running(self, message_id: str) -> bool:
        task = self._tasks.get(message_id)
        return task is not None and not task.done()

    async def wait(self, message_id: str) -> None:
        task = self._tasks.get(message_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def wait_all(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def start(self, job: GenerationJob) -> asyncio.Task:
        self._signal(job.message_id).clear()
        return self._track(job.message_id, self.run(job))

    def start_many(self, message_id: str, jobs: List[GenerationJob]) -> asyncio.Task:
        """Fan-out: every slot streams concurrently, one task for the message."""
        self._signal(message_id).clear()

        async def fan_out() -> None:
            await asyncio.gather(*(self.run(job) for job in jobs))

        return self._track(message_id, fan_out())

    # =====================================================
    # History
    # =====================================================

    async def history_before(self, message: Message) -> List[Message]:
        """The transcript leading up to ``message`` on whichever branch holds it."""
        chat = await self.store.require_chat(message.chat_id)
        candidates = [await self.branches.transcript_ids(chat)]
        for branch in await self.branches.list_branches(chat.id):
            candidates.append(chat.base_messages + branch.messages)
        for ids in candidates:
            if message.id in ids:
                return await self.store.get_messages(ids[: ids.index(message.id)])
        return []

    # =====================================================
    # Stop
    # =====================================================

    async def stop(self, message_id: str) -> None:
        for session in await self.store.list_sessions(message_id=message_id):
            if not session.is_complete:
                await self.store.patch(Collection.SESSIONS, session.session_id, is_stopped=True)
        event = self._signals.get(message_id)
        if event is not None:
            event.set()
            logger.info(f"⏹️ Stop requested for message {message_id}")
            return

        # nothing streaming here, make sure no spinner is left behind
        message = await self.store.get_message(message_id)
        if message is None or not message.is_streaming:
            return
        marker = self.settings.streaming.stopped_marker
        multi = message.metadata.multi_ai
        if multi is None:
            await self.messages.finalize(
                message_id,
                message.content + marker,
                response=ResponseMetadata(model=message.model, stopped=True, finish_reason="stopped"),
            )
        else:
            for slot in multi.live():
                if slot.is_complete and slot.content:
                    continue
                await self.coordinator.complete_slot(
                    message_id,
                    slot.response_id,
                    slot.content + marker,
                    response=ResponseMetadata(model=slot.model, stopped=True, finish_reason="stopped"),
                )
        for session in await self.store.list_sessions(message_id=message_id):
            if not session.is_complete:
                await self.store.patch(Collection.SESSIONS, session.session_id, status=StreamStatus.STOPPED)

    # =====================================================
    # Run
    # =====================================================

    async def run(self, job: GenerationJob) -> StreamStatus:
        session = job.session or StreamingSession(
            message_id=job.message_id,
            chat_id=job.chat_id,
            user_id=job.user_id,
            provider=self._provider_label(job.model),
            model=job.model,
            response_id=job.response_id,
        )
        if job.session is None:
            await self.store.insert(Collection.SESSIONS, session)
        state = _Run(job=job, session=session, text=job.initial_text, handle=job.resume_from)
        state.pending_reset = job.restart

        try:
            if job.command is not None:
                return await self._run_command(state)
            return await self._stream(state)
        except Exception as exc:
            if await self.store.get_message(job.message_id) is None:
                logger.info(f"ℹ️ Message {job.message_id} disappeared while streaming")
                await self._save(state, status=StreamStatus.STOPPED, is_stopped=True)
                return StreamStatus.STOPPED
            logger.exception(f"❌ Generation for message {job.message_id} failed: {exc!r}")
            return await self._fail_exhausted(state)

    def _provider_label(self, model: str) -> str:
        try:
            return resolve_provider(model).value
        except ChatError:
            return "unknown"

    async def _save(self, state: _Run, **fields: Any) -> StreamingSession:
        try:
            session = await self.store.patch(Collection.SESSIONS, state.session.session_id, **fields)
        except NotFound:
            return state.session
        state.session = session
        return session

    def _metadata(self, state: _Run, finish_reason: Optional[str], stopped: bool = False) -> ResponseMetadata:
        provider = state.provider.name.value if state.provider else state.session.provider
        return ResponseMetadata(
            provider=provider,
            model=state.job.model,
            finish_reason=finish_reason,
            response_time=round(time.monotonic() - state.started, 3),
            stopped=stopped,
        )

    async def _next(self, iterator: AsyncIterator[NormalizedDelta], stop: asyncio.Event) -> Any:
        if stop.is_set():
            return _STOP

        async def pull() -> Any:
            try:
                return await iterator.__anext__()
            except StopAsyncIteration:
                return _END

        pulling = asyncio.ensure_future(pull())
        stopping = asyncio.ensure_future(stop.wait())
        done, _ = await asyncio.wait({pulling, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if pulling in done:
            stopping.cancel()
            return pulling.result()
        pulling.cancel()
        await asyncio.gather(pulling, return_exceptions=True)
        return _STOP

    @staticmethod
    async def _close(iterator: Any) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except (ChatError, RuntimeError) as exc:
            logger.debug(f"Ignoring error while closing stream: {exc}")

    # =====================================================
    # Streaming state machine
    # =====================================================

    async def _stream(self, state: _Run) -> StreamStatus:
        job = state.job
        cfg = self.settings.streaming
        stop = self._signal(job.message_id)

        try:
            state.provider = await job.factory.for_model(job.model)
        except ChatError as exc:
            return await self._fail_rejected(state, exc)

        if state.handle is not None and state.provider.supports_resume:
            status = StreamStatus.RESUMING
            iterator = state.provider.resume(job.model, state.handle)
        else:
            if state.handle is not None:
                # a resume handle the provider cannot use means starting over
                state.pending_reset = True
                state.handle = None
            status = StreamStatus.STREAMING
            iterator = state.provider.generate(job.model, job.turns, job.options)
        await self._save(state, status=status, provider=state.provider.name.value)
        logger.info(f"▶️ Streaming {job.model} into message {job.message_id}")

        try:
            while True:
                try:
                    item = await self._next(iterator, stop)
                except ProviderRejection as exc:
                    return await self._fail_rejected(state, exc)
                except ProviderTransportError as exc:
                    await self._close(iterator)
                    iterator = await self._recover(state, exc)
                    if iterator is None:
                        return await self._fail_exhausted(state)
                    continue

                if item is _STOP:
                    return await self._finish_stopped(state)
                if item is _END:
                    # stream ended without a terminal event
                    return await self._finish_completed(state)

                delta: NormalizedDelta = item
                if delta.resume is not None:
                    state.handle = delta.resume
                if delta.text:
                    if state.pending_reset:
                        state.text = ""
                        state.pending_reset = False
                    state.text += delta.text
                    state.chunks += 1
                    await job.sink.write(state.text)
                    if state.chunks % cfg.stop_poll_every == 0:
                        await self._checkpoint(state, stop)
                if delta.citations:
                    state.citations = delta.citations
                if delta.is_final:
                    if state.pending_reset:
                        state.text = ""
                    state.finish_reason = delta.finish_reason
                    return await self._finish_completed(state)
                if state.session.status == StreamStatus.RESUMING and delta.text:
                    await self._save(state, status=StreamStatus.STREAMING)
        finally:
            await self._close(iterator)

    async def _checkpoint(self, state: _Run, stop: asyncio.Event) -> None:
        """Persist progress and pick up stops issued elsewhere."""
        fields: Dict[str, Any] = {"last_chunk_index": state.chunks}
        if state.handle is not None:
            fields["resume_token"] = state.handle.token
            fields["last_chunk_index"] = state.handle.sequence
        session = await self._save(state, **fields)
        if session.is_stopped:
            stop.set()

    async def _recover(self, state: _Run, exc: ProviderTransportError) -> Optional[AsyncIterator[NormalizedDelta]]:
        job = state.job
        state.recoveries += 1
        await self._save(
            state,
            error_count=state.session.error_count + 1,
            last_resumed_at=datetime.utcnow(),
        )
        if state.recoveries > self.settings.streaming.max_recoveries:
            logger.error(f"❌ Giving up on message {job.message_id} after {state.recoveries - 1} recoveries: {exc}")
            return None

        if state.provider.supports_resume and state.handle is not None:
            logger.warning(f"⏯️ Resuming message {job.message_id} from sequence {state.handle.sequence}: {exc}")
            await self._save(
                state,
                status=StreamStatus.RESUMING,
                resume_token=state.handle.token,
                last_chunk_index=state.handle.sequence,
            )
            return state.provider.resume(job.model, state.handle)

        logger.warning(f"🔄 Restarting message {job.message_id} ({state.recoveries}): {exc}")
        state.pending_reset = True
        state.handle = None
        await self._save(state, status=StreamStatus.STREAMING)
        return state.provider.generate(job.model, job.turns, job.options)

    # =====================================================
    # Terminal states
    # =====================================================

    async def _finish_completed(self, state: _Run) -> StreamStatus:
        cfg = self.settings.streaming
        if not state.text.strip():
            logger.warning(f"⚠️ {state.job.model} returned an empty response for {state.job.message_id}")
            await state.job.sink.finish(cfg.failure_message, self._metadata(state, "empty"))
            await self._save(state, status=StreamStatus.FAILED, is_complete=True)
            return StreamStatus.FAILED

        await state.job.sink.finish(
            state.text,
            self._metadata(state, state.finish_reason or "stop"),
            citations=state.citations,
        )
        await self._save(state, status=StreamStatus.COMPLETED, is_complete=True)
        logger.info(f"✅ Message {state.job.message_id} complete ({len(state.text)} chars)")
        return StreamStatus.COMPLETED

    async def _finish_stopped(self, state: _Run) -> StreamStatus:
        text = "" if state.pending_reset else state.text
        await state.job.sink.finish(
            text + self.settings.streaming.stopped_marker,
            self._metadata(state, "stopped", stopped=True),
            citations=state.citations,
        )
        await self._save(state, status=StreamStatus.STOPPED, is_stopped=True)
        logger.info(f"⏹️ Message {state.job.message_id} stopped")
        return StreamStatus.STOPPED

    async def _fail_rejected(self, state: _Run, exc: ChatError) -> StreamStatus:
        provider = getattr(exc, "provider", None) or state.session.provider
        message = self.settings.streaming.rejection_message.format(provider=provider)
        logger.error(f"❌ Request for message {state.job.message_id} rejected: {exc}")
        await state.job.sink.finish(message, self._metadata(state, "error"))
        await self._save(state, status=StreamStatus.FAILED, is_complete=True)
        return StreamStatus.FAILED

    async def _fail_exhausted(self, state: _Run) -> StreamStatus:
        cfg = self.settings.streaming
        partial = "" if state.pending_reset else state.text
        content = f"{partial}\n\n{cfg.failure_message}" if partial else cfg.failure_message
        await state.job.sink.finish(content, self._metadata(state, "error"))
        await self._save(state, status=StreamStatus.FAILED, is_complete=True)
        return StreamStatus.FAILED

    # =====================================================
    # Commands
    # =====================================================

    async def _run_command(self, state: _Run) -> StreamStatus:
        job = state.job
        await self._save(state, status=StreamStatus.STREAMING)

        if job.command in (Command.IMAGE, Command.VIDEO):
            return await self._run_media(state)

        turns = job.turns[:-1] + [ChatTurn(role="user", content=job.command_text)] if job.turns else []
        result = await WebSearch(self.settings, job.factory).search(
            job.command_text, job.model, turns, job.options
        )
        await job.sink.finish(
            result.text,
            ResponseMetadata(
                provider=result.source,
                model=job.model,
                finish_reason="stop",
                response_time=round(time.monotonic() - state.started, 3),
            ),
            citations=result.citations,
            search_query=job.command_text,
        )
        await self._save(state, status=StreamStatus.COMPLETED, is_complete=True, provider=result.source)
        return StreamStatus.COMPLETED

    async def _run_media(self, state: _Run) -> StreamStatus:
        job = state.job
        try:
            preferred = resolve_provider(job.model)
        except ChatError:
            preferred = None

        try:
            if job.command == Command.IMAGE:
                media = await ImageGenerator(job.factory).generate(job.command_text, preferred)
            else:
                media = await VideoGenerator(job.factory).generate(job.command_text, preferred)
        except (ImageGenerationFailed, VideoGenerationFailed) as exc:
            logger.error(f"❌ {job.command.value} command failed for message {job.message_id}: {exc}")
            failed = IMAGE_FAILED if job.command == Command.IMAGE else VIDEO_FAILED
            await job.sink.finish(failed, self._metadata(state, "error"))
            await self._save(state, status=StreamStatus.FAILED, is_complete=True)
            return StreamStatus.FAILED

        response = ResponseMetadata(
            provider=media.provider,
            model=media.model,
            finish_reason="stop",
            response_time=round(time.monotonic() - state.started, 3),
        )
        if job.command == Command.IMAGE:
            content = f"![{job.command_text}]({media.url})"
            await job.sink.image(job.command_text, media.url, content, response)
        else:
            content = f"Here's your generated video:\n\n[Generated Video]({media.url})"
            await job.sink.video(job.command_text, media.url, content, response)
        await self._save(state, status=StreamStatus.COMPLETED, is_complete=True, provider=media.provider)
        return StreamStatus.COMPLETED

    # =====================================================
    # Recovery after a restart of the process
    # =====================================================

    async def recover_incomplete(self, user_id: str, factory) -> int:
        """
        Resume or restart this user's interrupted generations.

        Returns:
            number of generations restarted
        """
        cfg = self.settings.streaming
        since = datetime.utcnow() - timedelta(seconds=cfg.incomplete_window_seconds)
        grouped: Dict[str, List[StreamingSession]] = {}
        for session in await self.store.list_sessions(user_id=user_id, since=since):
            if session.is_complete or session.is_stopped or self.is_running(session.message_id):
                continue
            grouped.setdefault(session.message_id, []).append(session)

        restarted = 0
        for message_id, sessions in grouped.items():
            message = await self.store.get_message(message_id)
            if message is None:
                for session in sessions:
                    await self.store.delete(Collection.SESSIONS, session.session_id)
                continue

            chat = await self.store.get_chat(message.chat_id)
            options = build_options(self.settings, chat.ai_settings if chat else None)
            turns = build_turns(await self.history_before(message))
            jobs = []
            for session in sessions:
                if session.error_count >= cfg.max_recoveries:
                    logger.warning(f"⚠️ Session {session.session_id} exhausted its recoveries, marking stopped")
                    await self.store.patch(
                        Collection.SESSIONS, session.session_id,
                        is_stopped=True, status=StreamStatus.STOPPED,
                    )
                    await self._abandon(message, session)
                    continue
                jobs.append(self._recovery_job(message, session, turns, options, factory))

            if not jobs:
                continue
            restarted += len(jobs)
            if message.metadata.multi_ai is not None:
                self.start_many(message_id, jobs)
            else:
                self.start(jobs[0])
        if restarted:
            logger.info(f"♻️ Recovering {restarted} generation(s) for user {user_id}")
        return restarted

    def _recovery_job(self, message: Message, session: StreamingSession, turns, options, factory) -> GenerationJob:
        initial = message.content
        sink: Any = MessageSink(self.messages, message.id)
        if session.response_id is not None and message.metadata.multi_ai is not None:
            slot = message.metadata.multi_ai.get(session.response_id)
            initial = slot.content if slot else ""
            sink = SlotSink(self.coordinator, message.id, session.response_id)
        handle = None
        if session.resume_token is not None:
            handle = ResumeMetadata(token=session.resume_token, sequence=session.last_chunk_index)
        return GenerationJob(
            chat_id=message.chat_id,
            user_id=session.user_id,
            message_id=message.id,
            model=session.model,
            turns=turns,
            options=options,
            factory=factory,
            sink=sink,
            response_id=session.response_id,
            session=session,
            initial_text=initial,
            resume_from=handle,
            restart=handle is None,
        )

    async def _abandon(self, message: Message, session: StreamingSession) -> None:
        marker = self.settings.streaming.error_marker
        response = ResponseMetadata(provider=session.provider, model=session.model, finish_reason="error")
        if session.response_id is not None and message.metadata.multi_ai is not None:
            slot = message.metadata.multi_ai.get(session.response_id)
            content = (slot.content if slot else "") + marker
            await self.coordinator.complete_slot(message.id, session.response_id, content, response=response)
        else:
            await self.messages.finalize(message.id, message.content + marker, response=response)
