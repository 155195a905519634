# branchchat/providers/factory.py

"""
Per-request provider construction

A ProviderFactory is built for one user request. It resolves credentials
(the user's own key first, the system default otherwise) and shares one
UploadCache across every generation the request starts.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

from branchchat.config import Settings
from branchchat.errors import ProviderRejection
from branchchat.providers.anthropic import AnthropicProvider
from branchchat.providers.attachments import BlobStore, UploadCache
from branchchat.providers.base import Provider, ProviderKind, ProviderName, provider_kind, resolve_provider
from branchchat.providers.google import GoogleProvider
from branchchat.providers.openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

IMPLEMENTATIONS: Dict[ProviderKind, Type[Provider]] = {
    ProviderKind.OPENAI_COMPATIBLE: OpenAICompatibleProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GOOGLE: GoogleProvider,
}

SYSTEM_KEY_FIELDS = {
    ProviderName.OPENAI: "openai_api_key",
    ProviderName.ANTHROPIC: "anthropic_api_key",
    ProviderName.GOOGLE: "gemini_api_key",
    ProviderName.DEEPSEEK: "deepseek_api_key",
    ProviderName.OPENROUTER: "openrouter_api_key",
}


class CredentialProvider(ABC):
    @abstractmethod
    async def get_key(self, user_id: str, provider: ProviderName) -> Optional[str]:
        ...


class StaticCredentialProvider(CredentialProvider):
    """User keys held in memory, falling back to the configured system keys."""

    def __init__(self, settings: Settings, user_keys: Optional[Dict[str, Dict[str, str]]] = None):
        self.settings = settings
        self.user_keys = user_keys or {}

    def set_key(self, user_id: str, provider: ProviderName, key: str) -> None:
        self.user_keys.setdefault(user_id, {})[provider.value] = key

    async def get_key(self, user_id: str, provider: ProviderName) -> Optional[str]:
        user_key = self.user_keys.get(user_id, {}).get(provider.value)
        if user_key:
            return user_key
        return getattr(self.settings.providers, SYSTEM_KEY_FIELDS[provider])


class ProviderFactory:
    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider,
        blob_store: BlobStore,
        user_id: str,
    ):
        self.settings = settings
        self.credentials = credentials
        self.blob_store = blob_store
        self.user_id = user_id
        self.upload_cache = UploadCache()
        self._providers: Dict[ProviderName, Provider] = {}

    async def for_name(self, name: ProviderName) -> Provider:
        if name in self._providers:
            return self._providers[name]
        api_key = await self.credentials.get_key(self.user_id, name)
        if not api_key:
            raise ProviderRejection(f"No API key configured for {name.value}", name.value)
        impl = IMPLEMENTATIONS[provider_kind(name)]
        provider = impl(name, api_key, self.settings, self.blob_store, self.upload_cache)
        self._providers[name] = provider
        return provider

    async def for_model(self, model: str) -> Provider:
        return await self.for_name(resolve_provider(model))

    async def available(self, *names: ProviderName) -> Dict[ProviderName, Provider]:
        """Providers among ``names`` the user holds a key for, in the given order."""
        result: Dict[ProviderName, Provider] = {}
        for name in names:
            try:
                result[name] = await self.for_name(name)
            except ProviderRejection:
                logger.debug(f"No key for {name.value}, skipping")
        return result
