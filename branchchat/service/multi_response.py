# branchchat/service/multi_response.py

"""
Multi-Response Coordinator

N parallel model answers attached to one assistant turn. The message's
visible content always mirrors the primary slot, and the message keeps
streaming until every live slot is complete with non-empty content.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from branchchat.database.store import ChatStore
from branchchat.errors import InvalidModelCount, MinimumResponsesRequired, ResponseNotFound
from branchchat.model import (
    Citation,
    Message,
    MultiAIResponse,
    ResponseMetadata,
    ResponseSlot,
)

logger = logging.getLogger(__name__)

MIN_MODELS = 2
MAX_MODELS = 8


def _mirror_primary(message: Message) -> None:
    multi = message.metadata.multi_ai
    primary = multi.primary() if multi else None
    if primary is None:
        return
    message.content = primary.content
    message.model = primary.model
    message.metadata.response = primary.metadata


def _refresh_streaming(message: Message) -> None:
    multi = message.metadata.multi_ai
    if multi is None:
        return
    message.is_streaming = not all(r.is_complete and r.content for r in multi.live())


def _live_slot(message: Message, response_id: str) -> ResponseSlot:
    multi = message.metadata.multi_ai
    slot = multi.get(response_id) if multi else None
    if slot is None or slot.is_deleted:
        raise ResponseNotFound(f"Response not found: {response_id}")
    return slot


class MultiResponseCoordinator:
    def __init__(self, store: ChatStore):
        self.store = store

    @staticmethod
    def validate_models(models: List[str]) -> None:
        if not MIN_MODELS <= len(models) <= MAX_MODELS:
            raise InvalidModelCount(
                f"Select between {MIN_MODELS} and {MAX_MODELS} models, got {len(models)}"
            )

    async def initialize(self, message_id: str, models: List[str]) -> MultiAIResponse:
        """One slot per model, the first one primary."""
        self.validate_models(models)
        slots = [ResponseSlot(model=m, is_primary=(i == 0)) for i, m in enumerate(models)]
        multi = MultiAIResponse(
            selected_models=list(models),
            responses=slots,
            primary_response_id=slots[0].response_id,
        )

        def apply(m: Message) -> None:
            m.metadata.multi_ai = multi
            m.is_streaming = True
            _mirror_primary(m)

        await self.store.update_message(message_id, apply)
        logger.info(f"🧩 Message {message_id} fans out to {len(models)} models")
        return multi

    # =====================================================
    # Slot writes (called from the streaming tasks)
    # =====================================================

    async def write_slot(self, message_id: str, response_id: str, content: str) -> None:
        def apply(m: Message) -> None:
            slot = m.metadata.multi_ai.get(response_id)
            if slot is None or slot.is_deleted:
                return
            slot.content = content
            if slot.is_primary:
                _mirror_primary(m)

        await self.store.update_message(message_id, apply)

    async def complete_slot(
        self,
        message_id: str,
        response_id: str,
        content: str,
        response: Optional[ResponseMetadata] = None,
        citations: Optional[List[Citation]] = None,
    ) -> Message:
        def apply(m: Message) -> None:
            slot = m.metadata.multi_ai.get(response_id)
            if slot is None:
                return
            slot.content = content
            slot.is_complete = True
            slot.metadata = response
            if slot.is_primary:
                _mirror_primary(m)
                if citations:
                    m.metadata.citations = citations
            _refresh_streaming(m)

        message = await self.store.update_message(message_id, apply)
        if not message.is_streaming:
            logger.info(f"✅ All responses of message {message_id} complete")
        return message

    # =====================================================
    # User operations
    # =====================================================

    async def set_primary(self, message_id: str, response_id: str) -> Message:
        def apply(m: Message) -> None:
            target = _live_slot(m, response_id)
            for slot in m.metadata.multi_ai.responses:
                slot.is_primary = slot.response_id == target.response_id
            m.metadata.multi_ai.primary_response_id = target.response_id
            _mirror_primary(m)

        return await self.store.update_message(message_id, apply)

    async def delete_response(self, message_id: str, response_id: str) -> Message:
        def apply(m: Message) -> None:
            target = _live_slot(m, response_id)
            multi = m.metadata.multi_ai
            if len(multi.live()) - 1 < MIN_MODELS:
                raise MinimumResponsesRequired(
                    f"A multi-model message needs at least {MIN_MODELS} responses"
                )
            target.is_deleted = True
            if target.is_primary:
                target.is_primary = False
                successor = multi.live()[0]
                successor.is_primary = True
                multi.primary_response_id = successor.response_id
                _mirror_primary(m)
            _refresh_streaming(m)

        message = await self.store.update_message(message_id, apply)
        logger.info(f"🗑️ Response {response_id} removed from message {message_id}")
        return message
