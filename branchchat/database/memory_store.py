from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from branchchat.database.store import ChatStore, Collection, Mutator, doc_id
from branchchat.errors import NotFound
from branchchat.model import Branch, Chat, Message, StreamingSession


class MemoryChatStore(ChatStore):
    """
    简单的内存存储层：
    - 每个 collection 一个 dict（id -> pydantic model）
    - 读写都做深拷贝，调用方拿到的是快照
    - mutator 在两次 await 之间执行完，天然原子
    """

    def __init__(self):
        self._docs: Dict[Collection, Dict[str, BaseModel]] = {c: {} for c in Collection}

    # --------- 基础读写 --------- #

    async def get(self, collection: Collection, id: str) -> Optional[BaseModel]:
        doc = self._docs[collection].get(id)
        return doc.model_copy(deep=True) if doc is not None else None

    async def insert(self, collection: Collection, doc: BaseModel) -> None:
        self._docs[collection][doc_id(doc)] = doc.model_copy(deep=True)

    async def update(self, collection: Collection, id: str, mutator: Mutator) -> BaseModel:
        current = self._docs[collection].get(id)
        if current is None:
            raise NotFound(f"{collection.value} document not found: {id}")
        doc = current.model_copy(deep=True)
        mutator(doc)
        self._docs[collection][id] = doc
        return doc.model_copy(deep=True)

    async def delete(self, collection: Collection, id: str) -> bool:
        return self._docs[collection].pop(id, None) is not None

    # --------- 查询 --------- #

    def _values(self, collection: Collection) -> List[BaseModel]:
        return [d.model_copy(deep=True) for d in self._docs[collection].values()]

    async def list_chats(self, user_id: str) -> List[Chat]:
        chats = [c for c in self._values(Collection.CHATS) if c.user_id == user_id]
        return sorted(chats, key=lambda c: c.updated_at, reverse=True)

    async def list_branches(self, chat_id: str) -> List[Branch]:
        branches = [b for b in self._values(Collection.BRANCHES) if b.chat_id == chat_id]
        return sorted(branches, key=lambda b: b.created_at)

    async def list_messages(self, chat_id: str, branch_id: Optional[str] = None) -> List[Message]:
        messages = [
            m for m in self._values(Collection.MESSAGES)
            if m.chat_id == chat_id and (branch_id is None or m.branch_id == branch_id)
        ]
        return sorted(messages, key=lambda m: m.timestamp)

    async def list_sessions(
        self,
        user_id: Optional[str] = None,
        message_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[StreamingSession]:
        sessions = [
            s for s in self._values(Collection.SESSIONS)
            if (user_id is None or s.user_id == user_id)
            and (message_id is None or s.message_id == message_id)
            and (since is None or (s.last_resumed_at or s.created_at) >= since)
        ]
        return sorted(sessions, key=lambda s: s.created_at)
