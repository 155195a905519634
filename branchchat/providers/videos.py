# branchchat/providers/videos.py

"""Video generation across capable providers, Google (Veo) first."""

from __future__ import annotations

import logging
from typing import List, Optional

from branchchat.errors import ChatError, VideoGenerationFailed
from branchchat.providers.base import GeneratedVideo, ProviderName

logger = logging.getLogger(__name__)

# Sora has no public API yet, OpenAI is left out until it does
VIDEO_PROVIDERS = (ProviderName.GOOGLE,)


class VideoGenerator:
    def __init__(self, factory):
        self.factory = factory

    def _order(self, preferred: Optional[ProviderName]) -> List[ProviderName]:
        order = [preferred] if preferred in VIDEO_PROVIDERS else []
        return order + [name for name in VIDEO_PROVIDERS if name not in order]

    async def generate(self, prompt: str, preferred: Optional[ProviderName] = None) -> GeneratedVideo:
        errors = []
        providers = await self.factory.available(*self._order(preferred))
        for name, provider in providers.items():
            if not provider.supports_video:
                continue
            try:
                logger.info(f"🎬 Generating video with {name.value}")
                video = await provider.generate_video(prompt)
                logger.info(f"✅ Video generated by {name.value}")
                return video
            except ChatError as exc:
                errors.append(f"{name.value}: {exc}")
                logger.warning(f"⚠️ Video generation failed on {name.value}: {exc}")

        logger.error(f"❌ Video generation failed on every provider for prompt: {prompt[:100]}")
        raise VideoGenerationFailed("; ".join(errors) or "No video-capable provider is configured")
