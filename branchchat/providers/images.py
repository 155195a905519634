# branchchat/providers/images.py

"""Image generation across capable providers, preferred one first."""

from __future__ import annotations

import logging
from typing import List, Optional

from branchchat.errors import ChatError, ImageGenerationFailed
from branchchat.providers.base import GeneratedImage, ProviderName

logger = logging.getLogger(__name__)

IMAGE_PROVIDERS = (ProviderName.OPENAI, ProviderName.GOOGLE)


class ImageGenerator:
    def __init__(self, factory):
        self.factory = factory

    def _order(self, preferred: Optional[ProviderName]) -> List[ProviderName]:
        order = [preferred] if preferred in IMAGE_PROVIDERS else []
        return order + [name for name in IMAGE_PROVIDERS if name not in order]

    async def generate(self, prompt: str, preferred: Optional[ProviderName] = None) -> GeneratedImage:
        errors = []
        providers = await self.factory.available(*self._order(preferred))
        for name, provider in providers.items():
            if not provider.supports_images:
                continue
            try:
                logger.info(f"🎨 Generating image with {name.value}")
                image = await provider.generate_image(prompt)
                logger.info(f"✅ Image generated by {name.value}")
                return image
            except ChatError as exc:
                errors.append(f"{name.value}: {exc}")
                logger.warning(f"⚠️ Image generation failed on {name.value}: {exc}")

        logger.error(f"❌ Image generation failed on every provider for prompt: {prompt[:100]}")
        raise ImageGenerationFailed("; ".join(errors) or "No image-capable provider is configured")
