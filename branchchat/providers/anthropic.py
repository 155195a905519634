# branchchat/providers/anthropic.py

"""
Anthropic provider

Streams through litellm's Anthropic ``/v1/messages`` passthrough so the
native event sequence (message_start, content_block_*, message_delta,
message_stop) is preserved. Restart-only.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from litellm.anthropic_interface import messages as anthropic_messages

from branchchat.errors import ProviderRejection, ProviderTransportError
from branchchat.model import AttachmentType, Citation, NormalizedDelta
from branchchat.providers.attachments import mime_type_of
from branchchat.providers.base import ChatTurn, GenerationOptions, Provider, ProviderKind

logger = logging.getLogger(__name__)

STOP_REASONS = {"end_turn": "stop", "stop_sequence": "stop", "max_tokens": "length"}
RETRYABLE_ERRORS = {"overloaded_error", "api_error", "rate_limit_error", "timeout_error"}

WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 5}


def parse_sse(raw: str) -> Optional[Dict[str, Any]]:
    data_lines = [
        line[5:].strip() for line in raw.replace("\r\n", "\n").split("\n") if line.startswith("data:")
    ]
    payload = "\n".join(data_lines).strip()
    if not payload or payload == "[DONE]":
        return None
    return json.loads(payload)


async def iter_events(stream) -> AsyncIterator[Dict[str, Any]]:
    """Yield event dicts from either raw SSE bytes or already-decoded events."""
    buffer = ""
    async for chunk in stream:
        if isinstance(chunk, dict):
            yield chunk
            continue
        if hasattr(chunk, "model_dump"):
            yield chunk.model_dump()
            continue
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8")
        buffer += chunk.replace("\r\n", "\n")
        while "\n\n" in buffer:
            raw, buffer = buffer.split("\n\n", 1)
            event = parse_sse(raw)
            if event is not None:
                yield event
    if buffer.strip():
        event = parse_sse(buffer)
        if event is not None:
            yield event


class AnthropicProvider(Provider):
    kind = ProviderKind.ANTHROPIC
    supports_resume = False
    supports_web_search = True

    async def _block(self, attachment) -> Dict[str, Any]:
        if attachment.type not in (AttachmentType.IMAGE, AttachmentType.PDF):
            return {"type": "text", "text": f"[Attachment: {attachment.name}]"}

        async def encode() -> str:
            return base64.b64encode(await self.blob_store.get(attachment.content_id)).decode("ascii")

        data = await self.upload_cache.get_or_upload(attachment.content_id, self.name.value, encode)
        block_type = "image" if attachment.type == AttachmentType.IMAGE else "document"
        return {
            "type": block_type,
            "source": {"type": "base64", "media_type": mime_type_of(attachment), "data": data},
        }

    async def _messages(self, turns: List[ChatTurn]) -> List[Dict]:
        messages: List[Dict] = []
        for turn in turns:
            if turn.role == "system":
                continue
            if not turn.attachments:
                messages.append({"role": turn.role, "content": turn.content})
                continue
            blocks = [await self._block(a) for a in turn.attachments]
            blocks.append({"type": "text", "text": turn.content})
            messages.append({"role": turn.role, "content": blocks})
        return messages

    async def generate(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> AsyncIterator[NormalizedDelta]:
        system = "\n\n".join(
            [options.system_prompt] + [t.content for t in turns if t.role == "system"]
        ).strip()
        kwargs: Dict[str, Any] = dict(
            model=f"anthropic/{model}",
            max_tokens=options.max_tokens or self.settings.ai_defaults.anthropic_max_tokens,
            stream=True,
            api_key=self.api_key,
        )
        if system:
            kwargs["system"] = system
        # newer models reject temperature and top_p together
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        elif options.top_p is not None:
            kwargs["top_p"] = options.top_p
        if options.web_search:
            kwargs["tools"] = [WEB_SEARCH_TOOL]

        try:
            kwargs["messages"] = await self._messages(turns)
            stream = await anthropic_messages.acreate(**kwargs)
        except Exception as exc:
            raise self.error(exc) from exc

        finish_reason: Optional[str] = None
        citations: List[Citation] = []
        seen_urls = set()
        try:
            async for event in iter_events(stream):
                kind = event.get("type")

                if kind == "content_block_start":
                    block = event.get("content_block") or {}
                    if block.get("type") == "text" and block.get("text"):
                        yield NormalizedDelta(text=block["text"])

                elif kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield NormalizedDelta(text=delta["text"])
                    elif delta.get("type") == "citations_delta":
                        citation = delta.get("citation") or {}
                        url = citation.get("url")
                        if url and url not in seen_urls:
                            seen_urls.add(url)
                            citations.append(
                                Citation(
                                    number=len(citations) + 1,
                                    title=citation.get("title") or url,
                                    url=url,
                                    source="anthropic",
                                    cited_text=citation.get("cited_text"),
                                )
                            )

                elif kind == "message_delta":
                    stop_reason = (event.get("delta") or {}).get("stop_reason")
                    if stop_reason:
                        finish_reason = STOP_REASONS.get(stop_reason, stop_reason)

                elif kind == "message_stop":
                    yield NormalizedDelta(
                        is_final=True,
                        finish_reason=finish_reason or "stop",
                        citations=citations,
                    )
                    return

                elif kind == "error":
                    error = event.get("error") or {}
                    message = f"{self.name.value}: {error.get('message') or error.get('type')}"
                    if error.get("type") in RETRYABLE_ERRORS:
                        raise ProviderTransportError(message, self.name.value)
                    raise ProviderRejection(message, self.name.value)
        except (ProviderTransportError, ProviderRejection):
            raise
        except Exception as exc:
            raise self.error(exc) from exc

        raise ProviderTransportError(f"{self.name.value}: stream closed before message_stop", self.name.value)
