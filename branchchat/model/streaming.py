# branchchat/model/streaming.py

"""
Streaming state

A StreamingSession is the orchestrator's bookkeeping for one generation
(one assistant message, or one slot of a multi-model message).
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from branchchat.model.chat import Citation, new_id


class StreamStatus(str, Enum):
    CREATED = "created"
    STREAMING = "streaming"
    RESUMING = "resuming"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


class StreamingSession(BaseModel):
    session_id: str = Field(default_factory=new_id)
    message_id: str
    chat_id: Optional[str] = None
    user_id: str
    provider: str
    model: str
    response_id: Optional[str] = None  # multi-model slot

    status: StreamStatus = StreamStatus.CREATED
    is_stopped: bool = False
    is_complete: bool = False
    last_chunk_index: int = 0
    resume_token: Optional[str] = None
    error_count: int = 0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_resumed_at: Optional[datetime] = None


class ResumeMetadata(BaseModel):
    token: str
    sequence: int


class NormalizedDelta(BaseModel):
    """Provider-independent stream event."""
    text: str = ""
    is_final: bool = False
    resume: Optional[ResumeMetadata] = None
    finish_reason: Optional[str] = None
    citations: List[Citation] = Field(default_factory=list)
