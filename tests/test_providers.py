import asyncio

import httpx
import openai
import pytest
from google.genai import errors as genai_errors

from branchchat.config import Settings
from branchchat.config.config import ProviderKeysConfig
from branchchat.errors import InvalidOperation, NotFound, ProviderError, ProviderRejection, ProviderTransportError, UnknownProvider
from branchchat.model import Attachment, AttachmentType
from branchchat.providers import (
    LocalBlobStore,
    ProviderFactory,
    ProviderKind,
    ProviderName,
    StaticCredentialProvider,
    UploadCache,
    classify_error,
    provider_kind,
    resolve_chat_provider,
    resolve_provider,
)
from branchchat.providers.anthropic import AnthropicProvider
from branchchat.providers.attachments import data_url, mime_type_of
from branchchat.providers.openai_compatible import OpenAICompatibleProvider

REQUEST = httpx.Request("POST", "https://api.test/v1/chat")


# =========================================================
# Resolution
# =========================================================

@pytest.mark.parametrize(
    "model, provider",
    [
        ("gpt-4o", ProviderName.OPENAI),
        ("o3-mini", ProviderName.OPENAI),
        ("dall-e-3", ProviderName.OPENAI),
        ("claude-3-5-sonnet-20241022", ProviderName.ANTHROPIC),
        ("gemini-2.0-flash", ProviderName.GOOGLE),
        ("deepseek-chat", ProviderName.DEEPSEEK),
        ("openai/gpt-4o", ProviderName.OPENROUTER),
        ("meta-llama/llama-3.1-70b-instruct", ProviderName.OPENROUTER),
        ("deepseek/deepseek-r1", ProviderName.OPENROUTER),
    ],
)
def test_resolve_provider(model, provider):
    assert resolve_provider(model) == provider


@pytest.mark.parametrize("model", ["dall-e-3", "gpt-image-1", "imagen-3.0-generate-002", "veo-3.0-generate-001", "sora-2"])
def test_media_models_cannot_chat(model):
    resolve_provider(model)
    with pytest.raises(InvalidOperation):
        resolve_chat_provider(model)


def test_chat_models_resolve_for_chat():
    assert resolve_chat_provider("gemini-2.5-flash") == ProviderName.GOOGLE
    # OpenRouter ids are left to OpenRouter
    assert resolve_chat_provider("openai/gpt-4o") == ProviderName.OPENROUTER


def test_unknown_model():
    with pytest.raises(UnknownProvider) as info:
        resolve_provider("llama-local")
    assert str(info.value) == "Unable to determine provider for model: llama-local"
    assert info.value.status_code == 422


def test_provider_kinds():
    assert provider_kind(ProviderName.DEEPSEEK) == ProviderKind.OPENAI_COMPATIBLE
    assert provider_kind(ProviderName.OPENROUTER) == ProviderKind.OPENAI_COMPATIBLE
    assert provider_kind(ProviderName.ANTHROPIC) == ProviderKind.ANTHROPIC


# =========================================================
# Error classification
# =========================================================

def status_error(cls, status):
    return cls("boom", response=httpx.Response(status, request=REQUEST), body=None)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (openai.APIConnectionError(request=REQUEST), ProviderTransportError),
        (openai.APITimeoutError(request=REQUEST), ProviderTransportError),
        (status_error(openai.RateLimitError, 429), ProviderTransportError),
        (status_error(openai.InternalServerError, 503), ProviderTransportError),
        (status_error(openai.AuthenticationError, 401), ProviderRejection),
        (status_error(openai.BadRequestError, 400), ProviderRejection),
        (genai_errors.ServerError(503, {"error": {"message": "unavailable"}}), ProviderTransportError),
        (genai_errors.ClientError(429, {"error": {"message": "quota"}}), ProviderTransportError),
        (genai_errors.ClientError(403, {"error": {"message": "denied"}}), ProviderRejection),
        (httpx.ReadTimeout("slow", request=REQUEST), ProviderTransportError),
        (asyncio.TimeoutError(), ProviderTransportError),
        (RuntimeError("stream died"), ProviderTransportError),
        (NotFound("Blob not found: blob-1"), ProviderRejection),
    ],
)
def test_classify_error(exc, expected):
    err = classify_error(exc, "openai")
    assert type(err) is expected
    assert err.provider == "openai"


def test_classify_error_keeps_provider_errors():
    original = ProviderRejection("no", "anthropic")
    assert classify_error(original, "openai") is original
    assert isinstance(original, ProviderError)


# =========================================================
# Factory & credentials
# =========================================================

@pytest.fixture
def keyed_settings():
    return Settings(providers=ProviderKeysConfig(openai_api_key="sk-system"))


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


async def test_factory_uses_system_keys_and_caches(keyed_settings, blob_store):
    factory = ProviderFactory(keyed_settings, StaticCredentialProvider(keyed_settings), blob_store, "alice")

    provider = await factory.for_model("gpt-4o")

    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.api_key == "sk-system"
    assert provider.supports_resume
    assert await factory.for_model("gpt-4o-mini") is provider
    assert provider.upload_cache is factory.upload_cache

    with pytest.raises(ProviderRejection):
        await factory.for_model("claude-3-5-sonnet")


async def test_user_keys_win(keyed_settings, blob_store):
    credentials = StaticCredentialProvider(keyed_settings)
    credentials.set_key("alice", ProviderName.OPENAI, "sk-alice")
    credentials.set_key("alice", ProviderName.ANTHROPIC, "sk-ant-alice")

    alice = ProviderFactory(keyed_settings, credentials, blob_store, "alice")
    bob = ProviderFactory(keyed_settings, credentials, blob_store, "bob")

    assert (await alice.for_name(ProviderName.OPENAI)).api_key == "sk-alice"
    assert isinstance(await alice.for_name(ProviderName.ANTHROPIC), AnthropicProvider)
    assert (await bob.for_name(ProviderName.OPENAI)).api_key == "sk-system"

    available = await bob.available(ProviderName.ANTHROPIC, ProviderName.OPENAI)
    assert list(available) == [ProviderName.OPENAI]


async def test_compatible_providers_are_restart_only(keyed_settings, blob_store):
    credentials = StaticCredentialProvider(keyed_settings, {"alice": {"deepseek": "sk-ds"}})
    factory = ProviderFactory(keyed_settings, credentials, blob_store, "alice")

    deepseek = await factory.for_model("deepseek-chat")

    assert not deepseek.supports_resume
    assert not deepseek.supports_images


# =========================================================
# Attachments
# =========================================================

async def test_local_blob_store(blob_store):
    await blob_store.put("abc", b"hello")
    assert await blob_store.get("abc") == b"hello"

    with pytest.raises(NotFound):
        await blob_store.get("missing")
    with pytest.raises(NotFound):
        await blob_store.get("../../etc/passwd")


async def test_upload_cache_uploads_once_per_provider():
    cache = UploadCache()
    calls = []

    async def upload():
        calls.append(1)
        return f"file-{len(calls)}"

    assert await cache.get_or_upload("blob", "openai", upload) == "file-1"
    assert await cache.get_or_upload("blob", "openai", upload) == "file-1"
    assert await cache.get_or_upload("blob", "google", upload) == "file-2"
    assert cache.uploads == 2
    assert cache.get("blob", "openai") == "file-1"


def test_mime_types():
    pdf = Attachment(type=AttachmentType.PDF, content_id="1", name="paper.pdf")
    unknown = Attachment(type=AttachmentType.IMAGE, content_id="2", name="blob")
    explicit = Attachment(type=AttachmentType.FILE, content_id="3", name="x", mime_type="text/csv")

    assert mime_type_of(pdf) == "application/pdf"
    assert mime_type_of(unknown) == "image/png"
    assert mime_type_of(explicit) == "text/csv"
    assert data_url("text/plain", b"hi") == "data:text/plain;base64,aGk="
