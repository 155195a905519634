from sqlalchemy import (
    Column,
    Text,
    DateTime,
    Boolean,
    Integer,
    JSON,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime


Base = declarative_base()


class ChatRow(Base):
    """聊天会话（包含主干消息）"""
    __tablename__ = "chats"

    id = Column(Text, primary_key=True)  # UUID
    user_id = Column(Text, nullable=False, index=True)
    title = Column(Text, nullable=False)
    model = Column(Text, nullable=False)

    active_branch_id = Column(Text, nullable=True)
    base_messages = Column(JSON, nullable=False, default=list)
    active_messages = Column(JSON, nullable=False, default=list)
    ai_settings = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, index=True)


class BranchRow(Base):
    __tablename__ = "branches"

    id = Column(Text, primary_key=True)
    chat_id = Column(Text, nullable=False, index=True)
    messages = Column(JSON, nullable=False, default=list)
    is_main = Column(Boolean, default=False)
    name = Column(Text, nullable=False)
    root_message_id = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class MessageRow(Base):
    """聊天消息"""
    __tablename__ = "messages"

    id = Column(Text, primary_key=True)
    chat_id = Column(Text, nullable=False, index=True)
    branch_id = Column(Text, nullable=True, index=True)

    role = Column(Text, nullable=False)  # system | user | assistant
    content = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    model = Column(Text, nullable=True)
    is_streaming = Column(Boolean, default=False)

    attachments = Column(JSON, nullable=False, default=list)
    commands = Column(JSON, nullable=False, default=list)
    edit_history = Column(JSON, nullable=False, default=list)
    message_versions = Column(JSON, nullable=False, default=list)
    branches = Column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)


class StreamingSessionRow(Base):
    __tablename__ = "streaming_sessions"

    session_id = Column(Text, primary_key=True)
    message_id = Column(Text, nullable=False, index=True)
    chat_id = Column(Text, nullable=True)
    user_id = Column(Text, nullable=False, index=True)
    provider = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    response_id = Column(Text, nullable=True)

    status = Column(Text, nullable=False)
    is_stopped = Column(Boolean, default=False)
    is_complete = Column(Boolean, default=False)
    last_chunk_index = Column(Integer, default=0)
    resume_token = Column(Text, nullable=True)
    error_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_resumed_at = Column(DateTime, nullable=True)
