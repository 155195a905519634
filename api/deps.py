from typing import Optional

from fastapi import Header, Request

from branchchat.errors import NotAuthenticated
from branchchat.service import ChatService


def get_chat_service(request: Request) -> ChatService:
    """The process-wide ChatService built in the app lifespan."""
    return request.app.state.chat_service


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, as forwarded by the auth gateway in ``X-User-Id``."""
    if not x_user_id:
        raise NotAuthenticated("Missing X-User-Id header")
    return x_user_id
