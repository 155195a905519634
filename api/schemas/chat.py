from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, Field

from branchchat.model import Attachment, Branch, BranchView, Chat, Message
from branchchat.service import DeleteMode


class CreateChatRequest(BaseModel):
    model: Optional[str] = None  # 默认使用 settings.default_model
    title: Optional[str] = None


class RenameChatRequest(BaseModel):
    title: str


class ChatListResponse(BaseModel):
    chats: List[Chat]


class TranscriptResponse(BaseModel):
    chat: Chat
    messages: List[Message]


class BranchListResponse(BaseModel):
    active_branch_id: Optional[str] = None
    branches: List[Branch]


class SendMessageRequest(BaseModel):
    content: str
    model: Optional[str] = None
    attachments: List[Attachment] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)  # e.g. ["image"], ["video"], ["search"]


class MultiModelMessageRequest(BaseModel):
    content: str
    models: List[str]
    attachments: List[Attachment] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)


class SendMessageResponse(BaseModel):
    user_message_id: str
    assistant_message_id: str


class EditMessageRequest(BaseModel):
    content: str
    regenerate: bool = True


class EditMessageResponse(BaseModel):
    message_id: str
    branch_id: str
    assistant_message_id: Optional[str] = None


class RetryRequest(BaseModel):
    model: Optional[str] = None


class RetryResponse(BaseModel):
    version_id: str


class SwitchBranchRequest(BaseModel):
    branch_id: str


class SwitchVersionRequest(BaseModel):
    version_id: str


class PrimaryResponseRequest(BaseModel):
    response_id: str


class DeleteMessageResponse(BaseModel):
    deleted_count: int
    from_index: int
    mode: DeleteMode


class MessageBranchesResponse(BaseModel):
    view: Optional[BranchView] = None


class RecoverResponse(BaseModel):
    restarted: int


__all__ = [
    "CreateChatRequest",
    "RenameChatRequest",
    "ChatListResponse",
    "TranscriptResponse",
    "BranchListResponse",
    "SendMessageRequest",
    "MultiModelMessageRequest",
    "SendMessageResponse",
    "EditMessageRequest",
    "EditMessageResponse",
    "RetryRequest",
    "RetryResponse",
    "SwitchBranchRequest",
    "SwitchVersionRequest",
    "PrimaryResponseRequest",
    "DeleteMessageResponse",
    "MessageBranchesResponse",
    "RecoverResponse",
]
