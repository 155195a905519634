from __future__ import annotations
from typing import Any, Dict, Optional
from pathlib import Path

import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Annotated
from pydantic import Field
from dotenv import load_dotenv

load_dotenv()


class ProviderKeysConfig(BaseModel):
    """System default credentials, used when a user has no key of their own."""
    openai_api_key: Annotated[Optional[str], Field(default=None)]
    anthropic_api_key: Annotated[Optional[str], Field(default=None)]
    gemini_api_key: Annotated[Optional[str], Field(default=None)]
    deepseek_api_key: Annotated[Optional[str], Field(default=None)]
    openrouter_api_key: Annotated[Optional[str], Field(default=None)]

    openai_api_base: Annotated[Optional[str], Field(default=None)]
    deepseek_api_base: Annotated[str, Field(default="https://api.deepseek.com/v1")]
    openrouter_api_base: Annotated[str, Field(default="https://openrouter.ai/api/v1")]

    # OpenAI native models stream through background Responses (resumable)
    openai_background_streams: Annotated[bool, Field(default=True)]
    request_timeout: Annotated[int, Field(default=120)]


class AIDefaultsConfig(BaseModel):
    temperature: Annotated[float, Field(default=0.7)]
    top_p: Annotated[float, Field(default=0.9)]
    max_tokens: Annotated[Optional[int], Field(default=None)]
    anthropic_max_tokens: Annotated[int, Field(default=4096)]
    system_prompt: Annotated[str, Field(default="")]


class StreamingConfig(BaseModel):
    max_recoveries: Annotated[int, Field(default=3)]
    stop_poll_every: Annotated[int, Field(default=8)]
    incomplete_window_seconds: Annotated[int, Field(default=3600)]
    stopped_marker: Annotated[str, Field(default="\n\n*[Response stopped]*")]
    error_marker: Annotated[str, Field(default="\n\n*[Response interrupted by an error]*")]
    failure_message: Annotated[
        str,
        Field(default="Sorry, something went wrong while generating this response. Please try again."),
    ]
    rejection_message: Annotated[
        str,
        Field(
            default=(
                "I'm sorry, but the {provider} provider rejected this request. "
                "Please check your API key settings and try again."
            )
        ),
    ]


class SearchConfig(BaseModel):
    """第三方搜索 API（无原生搜索能力的模型使用）"""
    tavily_api_key: Annotated[Optional[str], Field(default=None)]
    tavily_url: Annotated[str, Field(default="https://api.tavily.com/search")]
    brave_api_key: Annotated[Optional[str], Field(default=None)]
    brave_url: Annotated[str, Field(default="https://api.search.brave.com/res/v1/web/search")]
    timeout: Annotated[int, Field(default=20)]
    max_results: Annotated[int, Field(default=5)]
    max_citations: Annotated[int, Field(default=10)]


class ImageConfig(BaseModel):
    openai_model: Annotated[str, Field(default="dall-e-3")]
    google_model: Annotated[str, Field(default="gemini-2.5-flash-image")]
    size: Annotated[str, Field(default="1024x1024")]


class VideoConfig(BaseModel):
    google_model: Annotated[str, Field(default="veo-3.0-generate-001")]
    aspect_ratio: Annotated[str, Field(default="16:9")]
    # generation is a long-running operation, polled until done
    poll_interval_seconds: Annotated[float, Field(default=10.0)]
    timeout_seconds: Annotated[float, Field(default=600.0)]


class TitleConfig(BaseModel):
    delay_seconds: Annotated[float, Field(default=1.0)]
    max_length: Annotated[int, Field(default=50)]
    # when set, titles are generated by this model through litellm
    model: Annotated[Optional[str], Field(default=None)]


class Settings(BaseSettings):
    log_level: Annotated[str, Field(default="INFO")]

    # "memory://" keeps everything in-process
    database_url: Annotated[str, Field(default="sqlite+aiosqlite:///./branchchat.db")]
    blob_root: Annotated[str, Field(default="cache/blobs/")]
    default_model: Annotated[str, Field(default="gpt-4o-mini")]

    providers: ProviderKeysConfig = Field(default_factory=ProviderKeysConfig)
    ai_defaults: AIDefaultsConfig = Field(default_factory=AIDefaultsConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    videos: VideoConfig = Field(default_factory=VideoConfig)
    titles: TitleConfig = Field(default_factory=TitleConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def yaml_settings() -> Dict[str, Any]:
            path = Path("settings.yaml")
            if not path.exists():
                return {}
            return yaml.safe_load(path.read_text(encoding="utf-8")) or {}

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings,
        )


Config = Settings()
