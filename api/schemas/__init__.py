from .chat import (
    BranchListResponse,
    ChatListResponse,
    CreateChatRequest,
    DeleteMessageResponse,
    EditMessageRequest,
    EditMessageResponse,
    MessageBranchesResponse,
    MultiModelMessageRequest,
    PrimaryResponseRequest,
    RecoverResponse,
    RenameChatRequest,
    RetryRequest,
    RetryResponse,
    SendMessageRequest,
    SendMessageResponse,
    SwitchBranchRequest,
    SwitchVersionRequest,
    TranscriptResponse,
)

__all__ = [
    "BranchListResponse",
    "ChatListResponse",
    "CreateChatRequest",
    "DeleteMessageResponse",
    "EditMessageRequest",
    "EditMessageResponse",
    "MessageBranchesResponse",
    "MultiModelMessageRequest",
    "PrimaryResponseRequest",
    "RecoverResponse",
    "RenameChatRequest",
    "RetryRequest",
    "RetryResponse",
    "SendMessageRequest",
    "SendMessageResponse",
    "SwitchBranchRequest",
    "SwitchVersionRequest",
    "TranscriptResponse",
]
