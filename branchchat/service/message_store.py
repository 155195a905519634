# branchchat/service/message_store.py

"""
Message Store

Persistent record of chat turns: content, attachments, edit history and
the retry versions of assistant messages. Once versioning is initialized
a message's ``content`` / ``model`` always mirror its active version.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from branchchat.database.store import ChatStore, Collection
from branchchat.errors import InvalidOperation, VersionNotFound
from branchchat.model import (
    Attachment,
    Citation,
    Message,
    MessageVersion,
    ResponseMetadata,
    Role,
)

logger = logging.getLogger(__name__)


def mirror_active_version(message: Message) -> None:
    """Copy the message's current content onto its active version, if any."""
    version = message.active_version()
    if version is None:
        return
    version.content = message.content
    version.model = message.model
    version.metadata = message.metadata.response


class MessageStore:
    def __init__(self, store: ChatStore):
        self.store = store

    # =====================================================
    # Create / read
    # =====================================================

    async def create(
        self,
        chat_id: str,
        role: Role,
        content: str = "",
        model: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        commands: Optional[List[str]] = None,
        is_streaming: bool = False,
    ) -> Message:
        message = Message(
            chat_id=chat_id,
            role=role,
            content=content,
            model=model,
            attachments=attachments or [],
            commands=commands or [],
            is_streaming=is_streaming,
        )
        await self.store.insert(Collection.MESSAGES, message)
        return message

    async def get(self, message_id: str) -> Message:
        return await self.store.require_message(message_id)

    # =====================================================
    # Content
    # =====================================================

    async def set_content(
        self,
        message_id: str,
        content: str,
        is_streaming: Optional[bool] = None,
    ) -> Message:
        def apply(m: Message) -> None:
            m.content = content
            if is_streaming is not None:
                m.is_streaming = is_streaming
            mirror_active_version(m)

        return await self.store.update_message(message_id, apply)

    async def finalize(
        self,
        message_id: str,
        content: str,
        response: Optional[ResponseMetadata] = None,
        citations: Optional[List[Citation]] = None,
        model: Optional[str] = None,
        search_query: Optional[str] = None,
    ) -> Message:
        """Write the final content and stop streaming."""
        def apply(m: Message) -> None:
            m.content = content
            m.is_streaming = False
            if model:
                m.model = model
            if search_query is not None:
                m.metadata.search_query = search_query
            if response is not None:
                m.metadata.response = response
            if citations:
                m.metadata.citations = citations
            mirror_active_version(m)

        return await self.store.update_message(message_id, apply)

    async def set_image(
        self,
        message_id: str,
        prompt: str,
        url: Optional[str],
        content: str,
        response: Optional[ResponseMetadata] = None,
    ) -> Message:
        def apply(m: Message) -> None:
            m.content = content
            m.is_streaming = False
            m.metadata.image_prompt = prompt
            m.metadata.image_url = url
            if response is not None:
                m.metadata.response = response
            mirror_active_version(m)

        return await self.store.update_message(message_id, apply)

    async def set_video(
        self,
        message_id: str,
        prompt: str,
        url: str,
        content: str,
        response: Optional[ResponseMetadata] = None,
    ) -> Message:
        def apply(m: Message) -> None:
            m.content = content
            m.is_streaming = False
            m.metadata.video_prompt = prompt
            m.metadata.video_url = url
            if response is not None:
                m.metadata.response = response
            mirror_active_version(m)

        return await self.store.update_message(message_id, apply)

    # =====================================================
    # Versions
    # =====================================================

    async def start_new_version(self, message_id: str, model: Optional[str] = None) -> str:
        """
        Open a fresh, empty version for a retry and make it active.

        The first retry also records the existing content as version 1.

        Returns:
            the new version id
        """
        new_version = MessageVersion(model=model, is_active=True)

        def apply(m: Message) -> None:
            if m.role != Role.ASSISTANT:
                raise InvalidOperation("Only assistant messages can be retried")
            if m.metadata.multi_ai is not None:
                raise InvalidOperation("Multi-model messages cannot be retried")
            if not m.message_versions:
                m.message_versions.append(
                    MessageVersion(
                        content=m.content,
                        model=m.model,
                        timestamp=m.timestamp,
                        metadata=m.metadata.response,
                    )
                )
            for v in m.message_versions:
                v.is_active = False
            new_version.model = model or m.model
            m.message_versions.append(new_version)
            m.content = ""
            m.model = new_version.model
            m.is_streaming = True
            m.metadata.response = None
            m.metadata.citations = []

        await self.store.update_message(message_id, apply)
        logger.info(f"🔁 Message {message_id} -> new version {new_version.version_id}")
        return new_version.version_id

    async def switch_version(self, message_id: str, version_id: str) -> Message:
        def apply(m: Message) -> None:
            target = next((v for v in m.message_versions if v.version_id == version_id), None)
            if target is None:
                raise VersionNotFound(f"Version not found: {version_id}")
            for v in m.message_versions:
                v.is_active = v.version_id == version_id
            m.content = target.content
            m.model = target.model
            m.metadata.response = target.metadata

        return await self.store.update_message(message_id, apply)
