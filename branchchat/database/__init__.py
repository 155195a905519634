# branchchat/database/__init__.py

from .store import ChatStore, Collection
from .memory_store import MemoryChatStore
from .sql_store import SqlChatStore
from .db.session import create_engine


def build_store(database_url: str) -> ChatStore:
    """``memory://`` keeps everything in-process, anything else goes through SQLAlchemy."""
    if database_url.startswith("memory://"):
        return MemoryChatStore()
    return SqlChatStore(create_engine(database_url))


__all__ = [
    "ChatStore",
    "Collection",
    "MemoryChatStore",
    "SqlChatStore",
    "build_store",
]
