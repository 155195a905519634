# branchchat/database/store.py

"""
ChatStore - document store contract

四类文档：chats / branches / messages / streaming sessions。
Every write to an existing document is a read-modify-write of the whole
aggregate through ``update(collection, id, mutator)``; implementations
apply it atomically per document.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from branchchat.errors import NotFound
from branchchat.model import Branch, Chat, Message, StreamingSession

T = TypeVar("T", bound=BaseModel)
Mutator = Callable[[Any], None]


class Collection(str, Enum):
    CHATS = "chats"
    BRANCHES = "branches"
    MESSAGES = "messages"
    SESSIONS = "streaming_sessions"


MODEL_FOR: Dict[Collection, Type[BaseModel]] = {
    Collection.CHATS: Chat,
    Collection.BRANCHES: Branch,
    Collection.MESSAGES: Message,
    Collection.SESSIONS: StreamingSession,
}


def doc_id(doc: BaseModel) -> str:
    if isinstance(doc, StreamingSession):
        return doc.session_id
    return doc.id


class ChatStore(ABC):
    """Storage seam for everything the chat core persists."""

    # =====================================================
    # Primitives
    # =====================================================

    @abstractmethod
    async def get(self, collection: Collection, id: str) -> Optional[BaseModel]:
        ...

    @abstractmethod
    async def insert(self, collection: Collection, doc: BaseModel) -> None:
        ...

    @abstractmethod
    async def update(self, collection: Collection, id: str, mutator: Mutator) -> BaseModel:
        """Apply ``mutator`` to a fresh copy and persist it. Raises NotFound."""

    @abstractmethod
    async def delete(self, collection: Collection, id: str) -> bool:
        ...

    # =====================================================
    # Indexed queries
    # =====================================================

    @abstractmethod
    async def list_chats(self, user_id: str) -> List[Chat]:
        """Most recently updated first."""

    @abstractmethod
    async def list_branches(self, chat_id: str) -> List[Branch]:
        """Oldest first."""

    @abstractmethod
    async def list_messages(self, chat_id: str, branch_id: Optional[str] = None) -> List[Message]:
        """Ordered by timestamp."""

    @abstractmethod
    async def list_sessions(
        self,
        user_id: Optional[str] = None,
        message_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[StreamingSession]:
        ...

    async def close(self) -> None:
        return None

    # =====================================================
    # Typed helpers
    # =====================================================

    async def patch(self, collection: Collection, id: str, **fields: Any) -> BaseModel:
        def apply(doc: BaseModel) -> None:
            for key, value in fields.items():
                setattr(doc, key, value)

        return await self.update(collection, id, apply)

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        return await self.get(Collection.CHATS, chat_id)

    async def require_chat(self, chat_id: str) -> Chat:
        chat = await self.get_chat(chat_id)
        if chat is None:
            raise NotFound(f"Chat not found: {chat_id}")
        return chat

    async def update_chat(self, chat_id: str, mutator: Mutator) -> Chat:
        return await self.update(Collection.CHATS, chat_id, mutator)

    async def get_branch(self, branch_id: str) -> Optional[Branch]:
        return await self.get(Collection.BRANCHES, branch_id)

    async def update_branch(self, branch_id: str, mutator: Mutator) -> Branch:
        return await self.update(Collection.BRANCHES, branch_id, mutator)

    async def get_message(self, message_id: str) -> Optional[Message]:
        return await self.get(Collection.MESSAGES, message_id)

    async def require_message(self, message_id: str) -> Message:
        message = await self.get_message(message_id)
        if message is None:
            raise NotFound(f"Message not found: {message_id}")
        return message

    async def get_messages(self, ids: Sequence[str]) -> List[Message]:
        """Fetch in the given order, skipping ids that no longer exist."""
        result = []
        for message_id in ids:
            message = await self.get_message(message_id)
            if message is not None:
                result.append(message)
        return result

    async def update_message(self, message_id: str, mutator: Mutator) -> Message:
        return await self.update(Collection.MESSAGES, message_id, mutator)
