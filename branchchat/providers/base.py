# branchchat/providers/base.py

"""
Provider adapter contract

- model name -> provider resolution
- canonical chat turns and generation options
- vendor error classification (transport vs rejection)
- the abstract Provider every vendor adapter implements
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional

import httpx
import openai
from google.genai import errors as genai_errors
from pydantic import BaseModel, Field

from branchchat.errors import (
    ChatError,
    InvalidOperation,
    ProviderError,
    ProviderRejection,
    ProviderTransportError,
    UnknownProvider,
)
from branchchat.model import Attachment, Citation, NormalizedDelta, ResumeMetadata

if TYPE_CHECKING:
    from branchchat.config import Settings
    from branchchat.providers.attachments import BlobStore, UploadCache

logger = logging.getLogger(__name__)


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"


class ProviderKind(str, Enum):
    OPENAI_COMPATIBLE = "openai_compatible"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


PROVIDER_KINDS: Dict[ProviderName, ProviderKind] = {
    ProviderName.OPENAI: ProviderKind.OPENAI_COMPATIBLE,
    ProviderName.DEEPSEEK: ProviderKind.OPENAI_COMPATIBLE,
    ProviderName.OPENROUTER: ProviderKind.OPENAI_COMPATIBLE,
    ProviderName.ANTHROPIC: ProviderKind.ANTHROPIC,
    ProviderName.GOOGLE: ProviderKind.GOOGLE,
}

# vendor-prefixed ids are routed through OpenRouter
OPENROUTER_PREFIXES = (
    "openai/",
    "google/",
    "anthropic/",
    "x-ai/",
    "qwen/",
    "deepseek/",
    "mistralai/",
    "meta-llama/",
    "microsoft/",
    "perplexity/",
    "cohere/",
)


def resolve_provider(model: str) -> ProviderName:
    """Pure name-pattern lookup. Raises UnknownProvider."""
    if model.startswith(OPENROUTER_PREFIXES):
        return ProviderName.OPENROUTER
    if any(token in model for token in ("gemini", "imagen", "veo")):
        return ProviderName.GOOGLE
    if any(token in model for token in ("gpt", "dall-e", "sora", "o1", "o3", "o4")):
        return ProviderName.OPENAI
    if "claude" in model:
        return ProviderName.ANTHROPIC
    if "deepseek" in model:
        return ProviderName.DEEPSEEK
    raise UnknownProvider(model)


# names that only generate media and cannot hold a conversation
MEDIA_ONLY_TOKENS = ("dall-e", "gpt-image", "imagen", "veo", "sora")


def resolve_chat_provider(model: str) -> ProviderName:
    """resolve_provider for models that will be asked to chat."""
    name = resolve_provider(model)
    if name != ProviderName.OPENROUTER and any(token in model for token in MEDIA_ONLY_TOKENS):
        raise InvalidOperation(f"{model} is a media generation model and cannot be used for chat")
    return name


def provider_kind(name: ProviderName) -> ProviderKind:
    return PROVIDER_KINDS[name]


# =========================================================
# Canonical request shapes
# =========================================================

class ChatTurn(BaseModel):
    role: str  # system | user | assistant
    content: str
    attachments: List[Attachment] = Field(default_factory=list)


class GenerationOptions(BaseModel):
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    system_prompt: str = ""
    web_search: bool = False


class SearchResult(BaseModel):
    text: str
    citations: List[Citation] = Field(default_factory=list)
    source: str  # which link of the fallback chain answered


class GeneratedImage(BaseModel):
    provider: str
    model: str
    url: Optional[str] = None  # remote url or data: uri
    revised_prompt: Optional[str] = None


class GeneratedVideo(BaseModel):
    provider: str
    model: str
    url: str  # remote url or data: uri


# =========================================================
# Error classification
# =========================================================

RETRYABLE_STATUS = {408, 409, 429}


def classify_error(exc: BaseException, provider: str) -> ProviderError:
    """
    Map a vendor SDK exception onto the two provider error kinds.

    litellm's exceptions subclass the openai ones, so one table covers both.
    """
    if isinstance(exc, ProviderError):
        return exc
    message = f"{provider}: {exc}"

    # our own errors while shaping the request (e.g. a missing attachment blob)
    if isinstance(exc, ChatError):
        return ProviderRejection(message, provider)

    if isinstance(exc, openai.APIConnectionError):  # includes APITimeoutError
        return ProviderTransportError(message, provider)
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            return ProviderTransportError(message, provider)
        return ProviderRejection(message, provider)

    if isinstance(exc, genai_errors.ServerError):
        return ProviderTransportError(message, provider)
    if isinstance(exc, genai_errors.ClientError):
        if getattr(exc, "code", None) in RETRYABLE_STATUS:
            return ProviderTransportError(message, provider)
        return ProviderRejection(message, provider)

    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ProviderTransportError(message, provider)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            return ProviderTransportError(message, provider)
        return ProviderRejection(message, provider)

    # anything else is treated as a dropped stream, recovery stays bounded
    return ProviderTransportError(message, provider)


# =========================================================
# Provider
# =========================================================

class Provider(ABC):
    """One vendor. Instances live for a single request."""

    kind: ProviderKind
    supports_resume: bool = False
    supports_web_search: bool = False
    supports_images: bool = False
    supports_video: bool = False

    def __init__(
        self,
        name: ProviderName,
        api_key: Optional[str],
        settings: "Settings",
        blob_store: "BlobStore",
        upload_cache: "UploadCache",
    ):
        self.name = name
        self.api_key = api_key
        self.settings = settings
        self.blob_store = blob_store
        self.upload_cache = upload_cache

    @abstractmethod
    def generate(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> AsyncIterator[NormalizedDelta]:
        """
        Stream a reply.

        Yields one delta per text fragment followed by exactly one delta
        with ``is_final=True``. Failures surface as ProviderTransportError
        or ProviderRejection.
        """

    def resume(self, model: str, handle: ResumeMetadata) -> AsyncIterator[NormalizedDelta]:
        """Continue a dropped stream after ``handle.sequence``."""
        raise InvalidOperation(f"{self.name.value} streams cannot be resumed")

    async def generate_image(self, prompt: str) -> GeneratedImage:
        raise InvalidOperation(f"{self.name.value} cannot generate images")

    async def generate_video(self, prompt: str) -> GeneratedVideo:
        raise InvalidOperation(f"{self.name.value} cannot generate videos")

    def error(self, exc: BaseException) -> ChatError:
        err = classify_error(exc, self.name.value)
        logger.warning(f"⚠️ {self.name.value} call failed: {type(err).__name__}: {exc}")
        return err

    async def collect(
        self,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> SearchResult:
        """Drain ``generate`` into a single answer."""
        parts: List[str] = []
        citations: List[Citation] = []
        async for delta in self.generate(model, turns, options):
            parts.append(delta.text)
            if delta.citations:
                citations = delta.citations
        return SearchResult(text="".join(parts), citations=citations, source=self.name.value)
