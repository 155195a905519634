# branchchat/service/title_service.py

"""Chat titles, generated once after the first user turn."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
import openai
from litellm import acompletion

from branchchat.config import Settings
from branchchat.database.store import ChatStore, Collection
from branchchat.model import Role

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"

TITLE_PROMPT = """Write a short title (at most 6 words) for a conversation that starts with
the message below. Reply with the title only, no quotes.

{content}
"""


def truncate_title(content: str, max_length: int) -> str:
    text = " ".join(content.split())
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + "..."


class TitleService:
    def __init__(self, store: ChatStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def _llm_title(self, content: str) -> Optional[str]:
        try:
            resp = await acompletion(
                model=self.settings.titles.model,
                messages=[{"role": "user", "content": TITLE_PROMPT.format(content=content[:2000])}],
            )
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            logger.warning(f"⚠️ Title generation failed, falling back to truncation: {exc}")
            return None
        title = (resp.choices[0].message.content or "").strip().strip('"')
        return title or None

    async def generate_title(self, chat_id: str) -> Optional[str]:
        """
        根据第一个用户消息生成标题

        Returns:
            the new title, None when the chat is gone, already titled or empty
        """
        chat = await self.store.get_chat(chat_id)
        if chat is None or chat.title != DEFAULT_TITLE:
            return None

        first_user = next(
            (m for m in await self.store.get_messages(chat.active_messages) if m.role == Role.USER),
            None,
        )
        if first_user is None or not first_user.content.strip():
            return None

        cfg = self.settings.titles
        title = None
        if cfg.model:
            title = await self._llm_title(first_user.content)
        title = truncate_title(title or first_user.content, cfg.max_length)

        await self.store.patch(Collection.CHATS, chat_id, title=title)
        logger.info(f"🏷️ Chat {chat_id} titled: {title}")
        return title
