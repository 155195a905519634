# branchchat/model/__init__.py

from .chat import (
    AISettings,
    Attachment,
    AttachmentType,
    Branch,
    BranchView,
    Chat,
    Citation,
    EditHistoryEntry,
    Message,
    MessageMetadata,
    MessageVersion,
    MultiAIResponse,
    ResponseMetadata,
    ResponseSlot,
    Role,
    new_id,
)
from .streaming import (
    NormalizedDelta,
    ResumeMetadata,
    StreamingSession,
    StreamStatus,
)

__all__ = [
    "AISettings",
    "Attachment",
    "AttachmentType",
    "Branch",
    "BranchView",
    "Chat",
    "Citation",
    "EditHistoryEntry",
    "Message",
    "MessageMetadata",
    "MessageVersion",
    "MultiAIResponse",
    "ResponseMetadata",
    "ResponseSlot",
    "Role",
    "new_id",
    "NormalizedDelta",
    "ResumeMetadata",
    "StreamingSession",
    "StreamStatus",
]
