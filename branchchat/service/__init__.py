# branchchat/service/__init__.py

from .branch_manager import BranchManager, DeleteMode
from .chat_service import ChatService, DeleteResult, EditResult, SendResult
from .commands import Command, parse_command
from .message_store import MessageStore
from .multi_response import MultiResponseCoordinator
from .orchestrator import GenerationJob, MessageSink, SlotSink, StreamOrchestrator
from .title_service import TitleService

__all__ = [
    "BranchManager",
    "DeleteMode",
    "ChatService",
    "DeleteResult",
    "EditResult",
    "SendResult",
    "Command",
    "parse_command",
    "MessageStore",
    "MultiResponseCoordinator",
    "GenerationJob",
    "MessageSink",
    "SlotSink",
    "StreamOrchestrator",
    "TitleService",
]
