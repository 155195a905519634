# branchchat/providers/__init__.py

"""
Provider adapter layer

提供：
- 模型名 -> provider 解析
- 各厂商流式协议归一化为 NormalizedDelta
- 附件上传缓存、联网搜索、图片与视频生成（带回退）
"""

from .base import (
    ChatTurn,
    GeneratedImage,
    GeneratedVideo,
    GenerationOptions,
    Provider,
    ProviderKind,
    ProviderName,
    SearchResult,
    classify_error,
    provider_kind,
    resolve_chat_provider,
    resolve_provider,
)
from .attachments import BlobStore, LocalBlobStore, UploadCache
from .factory import CredentialProvider, ProviderFactory, StaticCredentialProvider
from .images import ImageGenerator
from .videos import VideoGenerator
from .websearch import WebSearch

__all__ = [
    "ChatTurn",
    "GeneratedImage",
    "GeneratedVideo",
    "GenerationOptions",
    "Provider",
    "ProviderKind",
    "ProviderName",
    "SearchResult",
    "classify_error",
    "provider_kind",
    "resolve_chat_provider",
    "resolve_provider",
    "BlobStore",
    "LocalBlobStore",
    "UploadCache",
    "CredentialProvider",
    "ProviderFactory",
    "StaticCredentialProvider",
    "ImageGenerator",
    "VideoGenerator",
    "WebSearch",
]
