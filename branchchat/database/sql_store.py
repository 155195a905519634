# branchchat/database/sql_store.py

"""
SqlChatStore - SQLAlchemy 实现

功能：
- chats / branches / messages / streaming sessions 的增删改查
- update() 在单个事务内完成 读取 -> mutator -> 写回
- row <-> pydantic model 转换
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel
from sqlalchemy import asc, desc, inspect, or_, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from branchchat.database.db.models import BranchRow, ChatRow, MessageRow, StreamingSessionRow
from branchchat.database.db.session import create_session_factory, create_tables
from branchchat.database.store import MODEL_FOR, ChatStore, Collection, Mutator
from branchchat.errors import NotFound
from branchchat.model import Branch, Chat, Message, StreamingSession

logger = logging.getLogger(__name__)

ROW_FOR: Dict[Collection, Type[Any]] = {
    Collection.CHATS: ChatRow,
    Collection.BRANCHES: BranchRow,
    Collection.MESSAGES: MessageRow,
    Collection.SESSIONS: StreamingSessionRow,
}

# model field -> row attribute, where they differ
RENAMED = {"metadata": "metadata_"}


class SqlChatStore(ChatStore):
    """聊天数据仓库"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.SessionLocal: async_sessionmaker = create_session_factory(engine)
        # serializes read-modify-write cycles issued from this process
        self._write_lock = asyncio.Lock()

    async def create_tables(self) -> None:
        await create_tables(self.engine)
        logger.info(f"✓ Tables ready on {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("✓ Database disconnected")

    # =====================================================
    # Row conversion
    # =====================================================

    @staticmethod
    def _row_to_model(collection: Collection, row: Any) -> BaseModel:
        data = {}
        for attr in inspect(type(row)).column_attrs:
            key = attr.key
            field = next((f for f, a in RENAMED.items() if a == key), key)
            data[field] = getattr(row, key)
        return MODEL_FOR[collection].model_validate(data)

    @staticmethod
    def _apply_model(row: Any, doc: BaseModel) -> None:
        # JSON-safe values for JSON columns, native datetimes for DateTime columns
        encoded = doc.model_dump(mode="json")
        for field, value in encoded.items():
            raw = getattr(doc, field)
            if isinstance(raw, datetime) or raw is None:
                value = raw
            # assign fresh objects so JSON columns are always flagged dirty
            setattr(row, RENAMED.get(field, field), value)

    # =====================================================
    # Primitives
    # =====================================================

    async def get(self, collection: Collection, id: str) -> Optional[BaseModel]:
        async with self.SessionLocal() as db:
            row = await db.get(ROW_FOR[collection], id)
            if not row:
                return None
            return self._row_to_model(collection, row)

    async def insert(self, collection: Collection, doc: BaseModel) -> None:
        async with self._write_lock:
            async with self.SessionLocal() as db:
                row = ROW_FOR[collection]()
                self._apply_model(row, doc)
                db.add(row)
                await db.commit()

    async def update(self, collection: Collection, id: str, mutator: Mutator) -> BaseModel:
        row_cls = ROW_FOR[collection]
        async with self._write_lock:
            async with self.SessionLocal() as db:
                async with db.begin():
                    pk = inspect(row_cls).primary_key[0]
                    row = (
                        await db.execute(select(row_cls).where(pk == id).with_for_update())
                    ).scalar_one_or_none()
                    if row is None:
                        raise NotFound(f"{collection.value} document not found: {id}")
                    doc = self._row_to_model(collection, row)
                    mutator(doc)
                    self._apply_model(row, doc)
                return doc

    async def delete(self, collection: Collection, id: str) -> bool:
        async with self._write_lock:
            async with self.SessionLocal() as db:
                row = await db.get(ROW_FOR[collection], id)
                if not row:
                    return False
                await db.delete(row)
                await db.commit()
                return True

    # =====================================================
    # Indexed queries
    # =====================================================

    async def _select(self, collection: Collection, stmt) -> List[BaseModel]:
        async with self.SessionLocal() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_model(collection, row) for row in rows]

    async def list_chats(self, user_id: str) -> List[Chat]:
        return await self._select(
            Collection.CHATS,
            select(ChatRow).where(ChatRow.user_id == user_id).order_by(desc(ChatRow.updated_at)),
        )

    async def list_branches(self, chat_id: str) -> List[Branch]:
        return await self._select(
            Collection.BRANCHES,
            select(BranchRow).where(BranchRow.chat_id == chat_id).order_by(asc(BranchRow.created_at)),
        )

    async def list_messages(self, chat_id: str, branch_id: Optional[str] = None) -> List[Message]:
        stmt = select(MessageRow).where(MessageRow.chat_id == chat_id)
        if branch_id is not None:
            stmt = stmt.where(MessageRow.branch_id == branch_id)
        return await self._select(Collection.MESSAGES, stmt.order_by(asc(MessageRow.timestamp)))

    async def list_sessions(
        self,
        user_id: Optional[str] = None,
        message_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[StreamingSession]:
        stmt = select(StreamingSessionRow)
        if user_id is not None:
            stmt = stmt.where(StreamingSessionRow.user_id == user_id)
        if message_id is not None:
            stmt = stmt.where(StreamingSessionRow.message_id == message_id)
        if since is not None:
            stmt = stmt.where(
                or_(
                    StreamingSessionRow.created_at >= since,
                    StreamingSessionRow.last_resumed_at >= since,
                )
            )
        return await self._select(
            Collection.SESSIONS, stmt.order_by(asc(StreamingSessionRow.created_at))
        )
