# branchchat/providers/openai_compatible.py

"""
OpenAI-compatible providers: OpenAI, DeepSeek, OpenRouter

DeepSeek and OpenRouter stream chat completions through litellm and can
only be restarted. Native OpenAI models stream through a background
Responses stream: the response id plus the event sequence numbers let a
dropped stream be picked up where it stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from litellm import acompletion, aimage_generation
from openai import AsyncOpenAI

from branchchat.errors import ProviderError, ProviderTransportError
from branchchat.model import AttachmentType, Citation, NormalizedDelta, ResumeMetadata
from branchchat.providers.attachments import data_url, mime_type_of
from branchchat.providers.base import (
    ChatTurn,
    GeneratedImage,
    GenerationOptions,
    Provider,
    ProviderKind,
    ProviderName,
)

logger = logging.getLogger(__name__)

REASONING_PREFIXES = ("o1", "o3", "o4")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def citation_from_annotation(annotation: Any, number: int) -> Optional[Citation]:
    if _get(annotation, "type") != "url_citation" or not _get(annotation, "url"):
        return None
    return Citation(
        number=number,
        title=_get(annotation, "title") or _get(annotation, "url"),
        url=_get(annotation, "url"),
        source="openai",
        start_index=_get(annotation, "start_index"),
        end_index=_get(annotation, "end_index"),
    )


def citations_from_output(response: Any) -> List[Citation]:
    citations: List[Citation] = []
    for item in _get(response, "output", None) or []:
        for part in _get(item, "content", None) or []:
            for annotation in _get(part, "annotations", None) or []:
                citation = citation_from_annotation(annotation, len(citations) + 1)
                if citation is not None:
                    citations.append(citation)
    return citations


@dataclass
class _ResponseState:
    token: Optional[str] = None
    sequence: Optional[int] = None
    finished: bool = False
    citations: List[Citation] = field(default_factory=list)

    def handle(self) -> Optional[ResumeMetadata]:
        if self.token is None or self.sequence is None:
            return None
        return ResumeMetadata(token=self.token, sequence=self.sequence)


class OpenAICompatibleProvider(Provider):
    kind = ProviderKind.OPENAI_COMPATIBLE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        native = self.name == ProviderName.OPENAI
        self.supports_resume = native and self.settings.providers.openai_background_streams
        self.supports_web_search = native
        self.supports_images = native
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.settings.providers.openai_api_base,
                timeout=self.settings.providers.request_timeout,
            )
        return self._client

    def _api_base(self) -> Optional[str]:
        providers = self.settings.providers
        if self.name == ProviderName.DEEPSEEK:
            return providers.deepseek_api_base
        if self.name == ProviderName.OPENROUTER:
            return providers.openrouter_api_base
        return providers.openai_api_base

    def _litellm_model(self, model: str) -> str:
        return f"{self.name.value}/{model}"

    # =========================================================
    # Entry points
    # =========================================================

    async def generate(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> AsyncIterator[NormalizedDelta]:
        if self.name == ProviderName.OPENAI and (self.supports_resume or options.web_search):
            async for delta in self._responses_stream(model, turns, options):
                yield delta
        else:
            async for delta in self._completion_stream(model, turns, options):
                yield delta

    async def resume(self, model: str, handle: ResumeMetadata) -> AsyncIterator[NormalizedDelta]:
        logger.info(f"⏯️ Resuming {handle.token} after sequence {handle.sequence}")
        try:
            stream = await self.client.responses.retrieve(
                handle.token,
                stream=True,
                starting_after=handle.sequence,
            )
        except Exception as exc:
            raise self.error(exc) from exc
        state = _ResponseState(token=handle.token, sequence=handle.sequence)
        async for delta in self._consume_response(stream, state):
            yield delta

    async def generate_image(self, prompt: str) -> GeneratedImage:
        image_model = self.settings.images.openai_model
        try:
            response = await aimage_generation(
                model=image_model,
                prompt=prompt,
                n=1,
                size=self.settings.images.size,
                api_key=self.api_key,
            )
        except Exception as exc:
            raise self.error(exc) from exc
        image = response.data[0]
        url = _get(image, "url")
        if not url and _get(image, "b64_json"):
            url = f"data:image/png;base64,{_get(image, 'b64_json')}"
        return GeneratedImage(
            provider=self.name.value,
            model=image_model,
            url=url,
            revised_prompt=_get(image, "revised_prompt"),
        )

    # =========================================================
    # Chat completions (litellm)
    # =========================================================

    async def _chat_part(self, attachment) -> Dict[str, Any]:
        if self.name == ProviderName.DEEPSEEK and attachment.type != AttachmentType.IMAGE:
            return {"type": "text", "text": f"[Attachment: {attachment.name}]"}

        async def encode() -> str:
            return data_url(mime_type_of(attachment), await self.blob_store.get(attachment.content_id))

        url = await self.upload_cache.get_or_upload(attachment.content_id, self.name.value, encode)
        if attachment.type == AttachmentType.IMAGE:
            return {"type": "image_url", "image_url": {"url": url}}
        return {"type": "file", "file": {"filename": attachment.name, "file_data": url}}

    async def _chat_messages(self, turns: List[ChatTurn], options: GenerationOptions) -> List[Dict]:
        messages: List[Dict] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        for turn in turns:
            if turn.role != "user" or not turn.attachments:
                messages.append({"role": turn.role, "content": turn.content})
                continue
            parts = [{"type": "text", "text": turn.content}]
            for attachment in turn.attachments:
                parts.append(await self._chat_part(attachment))
            messages.append({"role": "user", "content": parts})
        return messages

    async def _completion_stream(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> AsyncIterator[NormalizedDelta]:
        kwargs: Dict[str, Any] = dict(
            model=self._litellm_model(model),
            stream=True,
            api_key=self.api_key,
            api_base=self._api_base(),
            timeout=self.settings.providers.request_timeout,
        )
        for key in ("temperature", "top_p", "max_tokens", "frequency_penalty", "presence_penalty"):
            value = getattr(options, key)
            if value is not None:
                kwargs[key] = value

        finish_reason = None
        try:
            kwargs["messages"] = await self._chat_messages(turns, options)
            response = await acompletion(**kwargs)
            async for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                text = getattr(choice.delta, "content", None) if choice.delta else None
                if text:
                    yield NormalizedDelta(text=text)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except Exception as exc:
            raise self.error(exc) from exc

        yield NormalizedDelta(is_final=True, finish_reason=finish_reason or "stop")

    # =========================================================
    # Responses API (openai SDK)
    # =========================================================

    async def _upload_file(self, attachment) -> str:
        async def upload() -> str:
            data = await self.blob_store.get(attachment.content_id)
            uploaded = await self.client.files.create(
                file=(attachment.name, data, mime_type_of(attachment)),
                purpose="user_data",
            )
            return uploaded.id

        return await self.upload_cache.get_or_upload(attachment.content_id, self.name.value, upload)

    async def _response_input(self, turns: List[ChatTurn]) -> List[Dict]:
        items: List[Dict] = []
        for turn in turns:
            if turn.role != "user":
                items.append({"role": turn.role, "content": turn.content})
                continue
            content: List[Dict] = [{"type": "input_text", "text": turn.content}]
            for attachment in turn.attachments:
                if attachment.type == AttachmentType.IMAGE:
                    async def encode(a=attachment) -> str:
                        return data_url(mime_type_of(a), await self.blob_store.get(a.content_id))

                    url = await self.upload_cache.get_or_upload(
                        attachment.content_id, f"{self.name.value}:inline", encode
                    )
                    content.append({"type": "input_image", "image_url": url})
                else:
                    content.append({"type": "input_file", "file_id": await self._upload_file(attachment)})
            items.append({"role": "user", "content": content})
        return items

    async def _responses_stream(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> AsyncIterator[NormalizedDelta]:
        kwargs: Dict[str, Any] = dict(
            model=model,
            stream=True,
            store=True,
        )
        if self.supports_resume:
            kwargs["background"] = True
        if options.system_prompt:
            kwargs["instructions"] = options.system_prompt
        if not model.startswith(REASONING_PREFIXES):
            if options.temperature is not None:
                kwargs["temperature"] = options.temperature
            if options.top_p is not None:
                kwargs["top_p"] = options.top_p
        if options.max_tokens is not None:
            kwargs["max_output_tokens"] = options.max_tokens
        if options.web_search:
            kwargs["tools"] = [{"type": "web_search"}]

        try:
            kwargs["input"] = await self._response_input(turns)
            stream = await self.client.responses.create(**kwargs)
        except Exception as exc:
            raise self.error(exc) from exc
        async for delta in self._consume_response(stream, _ResponseState()):
            yield delta

    async def _consume_response(self, stream, state: _ResponseState) -> AsyncIterator[NormalizedDelta]:
        try:
            async for event in stream:
                delta = self._normalize_event(event, state)
                if delta is None:
                    continue
                yield delta
                if delta.is_final:
                    return
        except ProviderError:
            raise
        except Exception as exc:
            raise self.error(exc) from exc
        raise ProviderTransportError(
            f"{self.name.value}: response stream closed before completion", self.name.value
        )

    def _normalize_event(self, event: Any, state: _ResponseState) -> Optional[NormalizedDelta]:
        kind = _get(event, "type", "")
        sequence = _get(event, "sequence_number")
        if sequence is not None:
            state.sequence = sequence

        if kind in ("response.created", "response.queued", "response.in_progress"):
            state.token = _get(_get(event, "response"), "id") or state.token
            return NormalizedDelta(resume=state.handle()) if self.supports_resume else None

        if kind == "response.output_text.delta":
            return NormalizedDelta(text=_get(event, "delta") or "", resume=state.handle())

        if kind == "response.output_text.annotation.added":
            citation = citation_from_annotation(_get(event, "annotation"), len(state.citations) + 1)
            if citation is not None:
                state.citations.append(citation)
            return None

        if kind == "response.completed":
            state.finished = True
            citations = state.citations or citations_from_output(_get(event, "response"))
            return NormalizedDelta(
                is_final=True,
                finish_reason="stop",
                citations=citations,
                resume=state.handle(),
            )

        if kind == "response.incomplete":
            state.finished = True
            details = _get(_get(event, "response"), "incomplete_details")
            reason = _get(details, "reason")
            return NormalizedDelta(
                is_final=True,
                finish_reason="length" if reason == "max_output_tokens" else (reason or "incomplete"),
                citations=state.citations,
                resume=state.handle(),
            )

        if kind in ("response.failed", "error"):
            error = _get(_get(event, "response"), "error") or event
            message = _get(error, "message") or kind
            raise ProviderTransportError(f"{self.name.value}: {message}", self.name.value)

        return None
