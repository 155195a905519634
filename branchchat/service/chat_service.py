# branchchat/service/chat_service.py

"""
Chat service - the operations the HTTP layer exposes

Every call takes the caller's user id; ownership is checked here, the
branch/message/streaming work is delegated to the components below.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel

from branchchat.config import Settings
from branchchat.database.store import ChatStore, Collection
from branchchat.errors import InvalidOperation, NotAuthenticated, NotFound, Unauthorized
from branchchat.model import (
    AISettings,
    Attachment,
    Branch,
    BranchView,
    Chat,
    Message,
    Role,
)
from branchchat.providers.base import resolve_chat_provider
from branchchat.service.branch_manager import BranchManager, DeleteMode
from branchchat.service.commands import parse_command
from branchchat.service.message_store import MessageStore
from branchchat.service.multi_response import MultiResponseCoordinator
from branchchat.service.orchestrator import (
    GenerationJob,
    MessageSink,
    SlotSink,
    StreamOrchestrator,
    build_options,
    build_turns,
)
from branchchat.service.title_service import DEFAULT_TITLE, TitleService

logger = logging.getLogger(__name__)


class SendResult(BaseModel):
    user_message_id: str
    assistant_message_id: str


class EditResult(BaseModel):
    message_id: str
    branch_id: str
    assistant_message_id: Optional[str] = None


class DeleteResult(BaseModel):
    deleted_count: int
    from_index: int


class ChatService:
    """聊天服务"""

    def __init__(
        self,
        store: ChatStore,
        settings: Settings,
        factory_builder: Callable[[str], object],
        scheduler=None,
    ):
        """
        Args:
            store: document store
            settings: application settings
            factory_builder: user id -> per-request ProviderFactory
            scheduler: one-shot job scheduler used for titles (optional)
        """
        self.store = store
        self.settings = settings
        self.factory_builder = factory_builder
        self.scheduler = scheduler

        self.branches = BranchManager(store)
        self.messages = MessageStore(store)
        self.coordinator = MultiResponseCoordinator(store)
        self.orchestrator = StreamOrchestrator(
            store, self.messages, self.branches, self.coordinator, settings
        )
        self.titles = TitleService(store, settings)

    # =====================================================
    # Ownership
    # =====================================================

    async def _owned_chat(self, user_id: Optional[str], chat_id: str) -> Chat:
        if not user_id:
            raise NotAuthenticated("Not authenticated")
        chat = await self.store.get_chat(chat_id)
        if chat is None:
            raise NotFound(f"Chat not found: {chat_id}")
        if chat.user_id != user_id:
            raise Unauthorized("Unauthorized to access this chat")
        return chat

    async def _owned_message(self, user_id: Optional[str], message_id: str) -> Message:
        if not user_id:
            raise NotAuthenticated("Not authenticated")
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"Message not found: {message_id}")
        await self._owned_chat(user_id, message.chat_id)
        return message

    # =====================================================
    # Chats
    # =====================================================

    async def create_chat(self, user_id: Optional[str], model: Optional[str] = None, title: Optional[str] = None) -> Chat:
        if not user_id:
            raise NotAuthenticated("Not authenticated")
        model = model or self.settings.default_model
        resolve_chat_provider(model)

        chat = Chat(user_id=user_id, model=model, title=title or DEFAULT_TITLE)
        await self.store.insert(Collection.CHATS, chat)
        await self.branches.create_main_branch(chat)
        logger.info(f"💬 Chat {chat.id} created for user {user_id} ({model})")
        return await self.store.require_chat(chat.id)

    async def get_chat(self, user_id: Optional[str], chat_id: str) -> Chat:
        return await self._owned_chat(user_id, chat_id)

    async def list_chats(self, user_id: Optional[str]) -> List[Chat]:
        if not user_id:
            raise NotAuthenticated("Not authenticated")
        return await self.store.list_chats(user_id)

    async def rename_chat(self, user_id: Optional[str], chat_id: str, title: str) -> Chat:
        await self._owned_chat(user_id, chat_id)

        def rename(c: Chat) -> None:
            c.title = title.strip() or DEFAULT_TITLE
            c.updated_at = datetime.utcnow()

        return await self.store.update_chat(chat_id, rename)

    async def update_ai_settings(self, user_id: Optional[str], chat_id: str, ai_settings: AISettings) -> Chat:
        await self._owned_chat(user_id, chat_id)
        return await self.store.patch(Collection.CHATS, chat_id, ai_settings=ai_settings)

    async def delete_chat(self, user_id: Optional[str], chat_id: str) -> None:
        chat = await self._owned_chat(user_id, chat_id)
        for message_id in chat.active_messages:
            if self.orchestrator.is_running(message_id):
                await self.orchestrator.stop(message_id)
        for session in await self.store.list_sessions(user_id=chat.user_id):
            if session.chat_id == chat_id:
                await self.store.delete(Collection.SESSIONS, session.session_id)
        await self.branches.delete_chat_documents(chat_id)
        await self.store.delete(Collection.CHATS, chat_id)
        logger.info(f"🗑️ Chat {chat_id} deleted")

    # =====================================================
    # Sending
    # =====================================================

    async def _maybe_schedule_title(self, chat: Chat) -> None:
        if chat.title != DEFAULT_TITLE:
            return
        history = await self.store.get_messages(chat.active_messages)
        if sum(1 for m in history if m.role == Role.USER) != 1:
            return
        if self.scheduler is None:
            await self.titles.generate_title(chat.id)
            return
        self.scheduler.schedule_title(
            chat.id, self.titles.generate_title, self.settings.titles.delay_seconds
        )

    async def _append_turn(
        self,
        chat_id: str,
        role: Role,
        content: str = "",
        model: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        commands: Optional[List[str]] = None,
        is_streaming: bool = False,
    ) -> Message:
        message = await self.messages.create(
            chat_id,
            role,
            content=content,
            model=model,
            attachments=attachments,
            commands=commands,
            is_streaming=is_streaming,
        )
        await self.branches.append_to_active_branch(chat_id, message.id)
        return message

    def _job(self, chat: Chat, user_id: str, message_id: str, model: str, history: List[Message], factory, sink, **kwargs) -> GenerationJob:
        return GenerationJob(
            chat_id=chat.id,
            user_id=user_id,
            message_id=message_id,
            model=model,
            turns=build_turns(history),
            options=build_options(self.settings, chat.ai_settings),
            factory=factory,
            sink=sink,
            **kwargs,
        )

    async def send_message(
        self,
        user_id: Optional[str],
        chat_id: str,
        content: str,
        model: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        commands: Optional[List[str]] = None,
    ) -> SendResult:
        """
        Append a user turn and an empty streaming assistant turn, then start
        generating into the latter.

        Returns:
            ids of the two new messages
        """
        chat = await self._owned_chat(user_id, chat_id)
        model = model or chat.model
        resolve_chat_provider(model)
        command, command_text = parse_command(content, commands or [])

        user_message = await self._append_turn(
            chat_id, Role.USER, content=content, attachments=attachments, commands=commands
        )
        assistant = await self._append_turn(chat_id, Role.ASSISTANT, model=model, is_streaming=True)
        chat = await self.store.patch(Collection.CHATS, chat_id, model=model, updated_at=datetime.utcnow())

        history = await self.store.get_messages(chat.active_messages[:-1])
        job = self._job(
            chat,
            user_id,
            assistant.id,
            model,
            history,
            self.factory_builder(user_id),
            MessageSink(self.messages, assistant.id),
            command=command,
            command_text=command_text,
        )
        self.orchestrator.start(job)
        await self._maybe_schedule_title(chat)
        return SendResult(user_message_id=user_message.id, assistant_message_id=assistant.id)

    async def send_multi_model_message(
        self,
        user_id: Optional[str],
        chat_id: str,
        content: str,
        models: List[str],
        attachments: Optional[List[Attachment]] = None,
        commands: Optional[List[str]] = None,
    ) -> SendResult:
        """Like send_message, but every model answers into its own slot of one message."""
        chat = await self._owned_chat(user_id, chat_id)
        MultiResponseCoordinator.validate_models(models)
        for model in models:
            resolve_chat_provider(model)
        command, command_text = parse_command(content, commands or [])

        user_message = await self._append_turn(
            chat_id, Role.USER, content=content, attachments=attachments, commands=commands
        )
        assistant = await self._append_turn(chat_id, Role.ASSISTANT, model=models[0], is_streaming=True)
        multi = await self.coordinator.initialize(assistant.id, models)
        chat = await self.store.require_chat(chat_id)

        history = await self.store.get_messages(chat.active_messages[:-1])
        factory = self.factory_builder(user_id)
        jobs = [
            self._job(
                chat,
                user_id,
                assistant.id,
                slot.model,
                history,
                factory,
                SlotSink(self.coordinator, assistant.id, slot.response_id),
                response_id=slot.response_id,
                command=command,
                command_text=command_text,
            )
            for slot in multi.responses
        ]
        self.orchestrator.start_many(assistant.id, jobs)
        await self._maybe_schedule_title(chat)
        return SendResult(user_message_id=user_message.id, assistant_message_id=assistant.id)

    async def retry(self, user_id: Optional[str], message_id: str, model: Optional[str] = None) -> str:
        """Regenerate an assistant message into a new version. Returns the version id."""
        message = await self._owned_message(user_id, message_id)
        if self.orchestrator.is_running(message_id):
            raise InvalidOperation("Message is still streaming")
        model = model or message.model
        if not model:
            chat = await self.store.require_chat(message.chat_id)
            model = chat.model
        resolve_chat_provider(model)

        version_id = await self.messages.start_new_version(message_id, model)
        chat = await self.store.require_chat(message.chat_id)
        history = await self.orchestrator.history_before(message)
        job = self._job(
            chat,
            user_id,
            message_id,
            model,
            history,
            self.factory_builder(user_id),
            MessageSink(self.messages, message_id),
        )
        self.orchestrator.start(job)
        return version_id

    async def stop_streaming(self, user_id: Optional[str], message_id: str) -> None:
        await self._owned_message(user_id, message_id)
        await self.orchestrator.stop(message_id)

    # =====================================================
    # Editing & navigation
    # =====================================================

    async def edit_message(
        self,
        user_id: Optional[str],
        message_id: str,
        new_content: str,
        regenerate: bool = True,
    ) -> EditResult:
        """
        Fork the conversation at ``message_id`` with ``new_content``.

        Editing a user turn (with ``regenerate``) also starts a fresh
        assistant reply on the new branch.
        """
        message = await self._owned_message(user_id, message_id)
        edited, branch = await self.branches.fork_at(message, new_content)

        if message.role != Role.USER or not regenerate:
            return EditResult(message_id=edited.id, branch_id=branch.id)

        chat = await self.store.require_chat(message.chat_id)
        model = chat.model
        assistant = await self._append_turn(chat.id, Role.ASSISTANT, model=model, is_streaming=True)
        chat = await self.store.require_chat(chat.id)
        history = await self.store.get_messages(chat.active_messages[:-1])
        command, command_text = parse_command(new_content, edited.commands)
        job = self._job(
            chat,
            user_id,
            assistant.id,
            model,
            history,
            self.factory_builder(user_id),
            MessageSink(self.messages, assistant.id),
            command=command,
            command_text=command_text,
        )
        self.orchestrator.start(job)
        return EditResult(message_id=edited.id, branch_id=branch.id, assistant_message_id=assistant.id)

    async def switch_branch(self, user_id: Optional[str], chat_id: str, branch_id: str) -> Chat:
        await self._owned_chat(user_id, chat_id)
        return await self.branches.switch_branch(chat_id, branch_id)

    async def list_branches(self, user_id: Optional[str], chat_id: str) -> List[Branch]:
        await self._owned_chat(user_id, chat_id)
        return await self.branches.list_branches(chat_id)

    async def message_branches(self, user_id: Optional[str], message_id: str) -> Optional[BranchView]:
        message = await self._owned_message(user_id, message_id)
        return await self.branches.message_branches(message)

    async def switch_version(self, user_id: Optional[str], message_id: str, version_id: str) -> Message:
        await self._owned_message(user_id, message_id)
        return await self.messages.switch_version(message_id, version_id)

    async def set_primary_response(self, user_id: Optional[str], message_id: str, response_id: str) -> Message:
        await self._owned_message(user_id, message_id)
        return await self.coordinator.set_primary(message_id, response_id)

    async def delete_response(self, user_id: Optional[str], message_id: str, response_id: str) -> Message:
        await self._owned_message(user_id, message_id)
        return await self.coordinator.delete_response(message_id, response_id)

    async def delete_message(
        self,
        user_id: Optional[str],
        message_id: str,
        mode: DeleteMode = DeleteMode.SINGLE,
    ) -> DeleteResult:
        message = await self._owned_message(user_id, message_id)
        deleted_count, from_index = await self.branches.delete_message(message, DeleteMode(mode))
        return DeleteResult(deleted_count=deleted_count, from_index=from_index)

    # =====================================================
    # Reads & recovery
    # =====================================================

    async def get_transcript(self, user_id: Optional[str], chat_id: str) -> List[Message]:
        chat = await self._owned_chat(user_id, chat_id)
        return await self.branches.transcript(chat)

    async def get_message(self, user_id: Optional[str], message_id: str) -> Message:
        return await self._owned_message(user_id, message_id)

    async def recover_incomplete(self, user_id: Optional[str]) -> int:
        if not user_id:
            raise NotAuthenticated("Not authenticated")
        return await self.orchestrator.recover_incomplete(user_id, self.factory_builder(user_id))
