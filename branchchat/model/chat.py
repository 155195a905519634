# branchchat/model/chat.py

"""
Chat data models

Chats own a trunk of shared messages (``base_messages``) and a set of
branches. A branch's full transcript is ``base_messages + branch.messages``.
Messages are stored by id, so forks never duplicate the shared prefix.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class AttachmentType(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"


class Attachment(BaseModel):
    type: AttachmentType
    content_id: str  # blob store id
    name: str
    size: int = 0
    mime_type: Optional[str] = None


class Citation(BaseModel):
    number: int
    title: str = ""
    url: str
    source: Optional[str] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    cited_text: Optional[str] = None


class ResponseMetadata(BaseModel):
    """What produced a piece of assistant content."""
    provider: Optional[str] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    response_time: Optional[float] = None  # seconds
    stopped: bool = False


class EditHistoryEntry(BaseModel):
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class MessageVersion(BaseModel):
    version_id: str = Field(default_factory=new_id)
    content: str = ""
    model: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    is_active: bool = False
    metadata: Optional[ResponseMetadata] = None


class ResponseSlot(BaseModel):
    """One model's answer inside a multi-model assistant turn."""
    response_id: str = Field(default_factory=new_id)
    model: str
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    is_primary: bool = False
    is_deleted: bool = False
    is_complete: bool = False
    metadata: Optional[ResponseMetadata] = None


class MultiAIResponse(BaseModel):
    selected_models: List[str]
    responses: List[ResponseSlot] = Field(default_factory=list)
    primary_response_id: Optional[str] = None

    def live(self) -> List[ResponseSlot]:
        return [r for r in self.responses if not r.is_deleted]

    def get(self, response_id: str) -> Optional[ResponseSlot]:
        for r in self.responses:
            if r.response_id == response_id:
                return r
        return None

    def primary(self) -> Optional[ResponseSlot]:
        if self.primary_response_id is None:
            return None
        return self.get(self.primary_response_id)


class MessageMetadata(BaseModel):
    citations: List[Citation] = Field(default_factory=list)
    search_query: Optional[str] = None
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None
    video_prompt: Optional[str] = None
    video_url: Optional[str] = None
    multi_ai: Optional[MultiAIResponse] = None
    response: Optional[ResponseMetadata] = None


class Message(BaseModel):
    """A single chat turn"""
    id: str = Field(default_factory=new_id)
    chat_id: str
    branch_id: Optional[str] = None  # owning branch
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    model: Optional[str] = None
    is_streaming: bool = False

    attachments: List[Attachment] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    edit_history: List[EditHistoryEntry] = Field(default_factory=list)
    message_versions: List[MessageVersion] = Field(default_factory=list)
    branches: List[str] = Field(default_factory=list)  # forks rooted at this message
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    def active_version(self) -> Optional[MessageVersion]:
        for v in self.message_versions:
            if v.is_active:
                return v
        return None


class Branch(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: str
    messages: List[str] = Field(default_factory=list)  # ids after the trunk
    is_main: bool = False
    name: str = "Main"
    root_message_id: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AISettings(BaseModel):
    """Per-chat overrides. Unset fields fall back to the configured defaults."""
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    system_prompt: Optional[str] = None


class Chat(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str = "New Chat"
    model: str
    active_branch_id: Optional[str] = None
    base_messages: List[str] = Field(default_factory=list)
    active_messages: List[str] = Field(default_factory=list)
    ai_settings: Optional[AISettings] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class BranchView(BaseModel):
    """Navigation view over the original line of a message and its forks."""
    message_id: str
    branch_ids: List[str]
    current_index: int  # 0-based position of the active branch in branch_ids
    total: int

    @property
    def label(self) -> str:
        return f"{self.current_index + 1}/{self.total}"

