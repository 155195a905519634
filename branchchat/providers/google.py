# branchchat/providers/google.py

"""
Google (Gemini) provider - google-genai

- streaming chat via client.aio.models.generate_content_stream
- attachments uploaded through the Files API
- Google Search grounding -> citations
- image generation with response_modalities=["IMAGE"]
- video generation (Veo) as a polled long-running operation
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from google import genai
from google.genai import types

from branchchat.errors import ProviderError, ProviderRejection, ProviderTransportError
from branchchat.model import Citation, NormalizedDelta
from branchchat.providers.attachments import mime_type_of
from branchchat.providers.base import (
    ChatTurn,
    GeneratedImage,
    GeneratedVideo,
    GenerationOptions,
    Provider,
    ProviderKind,
)

logger = logging.getLogger(__name__)

FINISH_REASONS = {"STOP": "stop", "MAX_TOKENS": "length", "SAFETY": "content_filter"}


def finish_reason_of(value: Any) -> Optional[str]:
    if value is None:
        return None
    name = getattr(value, "name", None) or str(value)
    return FINISH_REASONS.get(name, name.lower())


def citations_from_grounding(metadata: Any) -> List[Citation]:
    """Turn grounding chunks + supports into numbered citations."""
    if metadata is None:
        return []
    chunks = getattr(metadata, "grounding_chunks", None) or []
    supports = getattr(metadata, "grounding_supports", None) or []

    by_index: Dict[int, Citation] = {}
    for support in supports:
        segment = getattr(support, "segment", None)
        for idx in getattr(support, "grounding_chunk_indices", None) or []:
            if idx in by_index or idx >= len(chunks):
                continue
            web = getattr(chunks[idx], "web", None)
            if web is None or not getattr(web, "uri", None):
                continue
            by_index[idx] = Citation(
                number=idx + 1,
                title=getattr(web, "title", None) or web.uri,
                url=web.uri,
                source="google",
                start_index=getattr(segment, "start_index", None),
                end_index=getattr(segment, "end_index", None),
                cited_text=getattr(segment, "text", None),
            )
    for idx, chunk in enumerate(chunks):
        web = getattr(chunk, "web", None)
        if idx not in by_index and web is not None and getattr(web, "uri", None):
            by_index[idx] = Citation(
                number=idx + 1,
                title=getattr(web, "title", None) or web.uri,
                url=web.uri,
                source="google",
            )
    return [by_index[i] for i in sorted(by_index)]


class GoogleProvider(Provider):
    kind = ProviderKind.GOOGLE
    supports_resume = False
    supports_web_search = True
    supports_images = True
    supports_video = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: Optional[genai.Client] = None

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    # =========================================================
    # Request shaping
    # =========================================================

    async def _part(self, attachment) -> types.Part:
        async def upload():
            data = await self.blob_store.get(attachment.content_id)
            uploaded = await self.client.aio.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(
                    mime_type=mime_type_of(attachment),
                    display_name=attachment.name,
                ),
            )
            return uploaded.uri, uploaded.mime_type or mime_type_of(attachment)

        uri, mime_type = await self.upload_cache.get_or_upload(
            attachment.content_id, self.name.value, upload
        )
        return types.Part.from_uri(file_uri=uri, mime_type=mime_type)

    async def _contents(self, turns: List[ChatTurn]) -> List[types.Content]:
        contents = []
        for turn in turns:
            if turn.role == "system":
                continue
            parts = [await self._part(a) for a in turn.attachments]
            parts.append(types.Part.from_text(text=turn.content))
            contents.append(
                types.Content(role="model" if turn.role == "assistant" else "user", parts=parts)
            )
        return contents

    def _config(self, turns: List[ChatTurn], options: GenerationOptions) -> types.GenerateContentConfig:
        system = "\n\n".join(
            [options.system_prompt] + [t.content for t in turns if t.role == "system"]
        ).strip()
        tools = [types.Tool(google_search=types.GoogleSearch())] if options.web_search else None
        return types.GenerateContentConfig(
            system_instruction=system or None,
            temperature=options.temperature,
            top_p=options.top_p,
            max_output_tokens=options.max_tokens,
            frequency_penalty=options.frequency_penalty,
            presence_penalty=options.presence_penalty,
            tools=tools,
        )

    # =========================================================
    # Streaming
    # =========================================================

    async def generate(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> AsyncIterator[NormalizedDelta]:
        finish_reason: Optional[str] = None
        citations: List[Citation] = []
        try:
            stream = await self.client.aio.models.generate_content_stream(
                model=model,
                contents=await self._contents(turns),
                config=self._config(turns, options),
            )
            async for chunk in stream:
                candidates = getattr(chunk, "candidates", None) or []
                candidate = candidates[0] if candidates else None
                content = getattr(candidate, "content", None)
                for part in getattr(content, "parts", None) or []:
                    if getattr(part, "text", None) and not getattr(part, "thought", False):
                        yield NormalizedDelta(text=part.text)
                if candidate is not None:
                    grounded = citations_from_grounding(getattr(candidate, "grounding_metadata", None))
                    if grounded:
                        citations = grounded
                    finish_reason = finish_reason_of(getattr(candidate, "finish_reason", None)) or finish_reason
        except ProviderError:
            raise
        except Exception as exc:
            raise self.error(exc) from exc

        yield NormalizedDelta(is_final=True, finish_reason=finish_reason or "stop", citations=citations)

    # =========================================================
    # Images
    # =========================================================

    async def generate_image(self, prompt: str) -> GeneratedImage:
        image_model = self.settings.images.google_model
        contents = [types.Content(role="user", parts=[types.Part.from_text(text=prompt)])]
        config = types.GenerateContentConfig(response_modalities=["IMAGE"])

        logger.info(f"🎨 Generating image with model: {image_model}")
        text_responses = []
        try:
            stream = await self.client.aio.models.generate_content_stream(
                model=image_model,
                contents=contents,
                config=config,
            )
            async for chunk in stream:
                if (
                    chunk.candidates is None
                    or chunk.candidates[0].content is None
                    or chunk.candidates[0].content.parts is None
                ):
                    continue
                for part in chunk.candidates[0].content.parts:
                    if part.inline_data and part.inline_data.data:
                        inline_data = part.inline_data
                        encoded = base64.b64encode(inline_data.data).decode("ascii")
                        return GeneratedImage(
                            provider=self.name.value,
                            model=image_model,
                            url=f"data:{inline_data.mime_type or 'image/png'};base64,{encoded}",
                        )
                    if part.text:
                        text_responses.append(part.text)
        except Exception as exc:
            raise self.error(exc) from exc

        full_text = "\n".join(text_responses)
        raise ProviderTransportError(
            f"google: no image data in response. Text: {full_text[:50] if full_text else 'None'}",
            self.name.value,
        )

    # =========================================================
    # Videos
    # =========================================================

    async def generate_video(self, prompt: str) -> GeneratedVideo:
        cfg = self.settings.videos
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.timeout_seconds

        logger.info(f"🎬 Generating video with model: {cfg.google_model}")
        try:
            operation = await self.client.aio.models.generate_videos(
                model=cfg.google_model,
                prompt=prompt,
                config=types.GenerateVideosConfig(number_of_videos=1, aspect_ratio=cfg.aspect_ratio),
            )
            while not operation.done:
                if loop.time() >= deadline:
                    raise ProviderTransportError(
                        f"google: video generation timed out after {cfg.timeout_seconds:.0f}s",
                        self.name.value,
                    )
                await asyncio.sleep(cfg.poll_interval_seconds)
                operation = await self.client.aio.operations.get(operation)
        except ProviderError:
            raise
        except Exception as exc:
            raise self.error(exc) from exc

        if operation.error:
            message = operation.error.get("message") or str(operation.error)
            raise ProviderRejection(f"google: {message}", self.name.value)

        videos = (operation.response.generated_videos if operation.response else None) or []
        video = videos[0].video if videos else None
        if video is None:
            raise ProviderTransportError("google: no video in response", self.name.value)
        if video.video_bytes:
            encoded = base64.b64encode(video.video_bytes).decode("ascii")
            url = f"data:{video.mime_type or 'video/mp4'};base64,{encoded}"
        elif video.uri:
            url = video.uri
        else:
            raise ProviderTransportError("google: video has neither bytes nor uri", self.name.value)
        return GeneratedVideo(provider=self.name.value, model=cfg.google_model, url=url)
