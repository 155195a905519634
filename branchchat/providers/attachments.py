# branchchat/providers/attachments.py

"""
Attachment plumbing shared by the provider adapters

- BlobStore: bytes by content id (file storage itself lives elsewhere)
- UploadCache: provider-side references keyed by (content_id, provider)
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Tuple

from branchchat.errors import NotFound
from branchchat.model import Attachment, AttachmentType

logger = logging.getLogger(__name__)

DEFAULT_MIME = {
    AttachmentType.IMAGE: "image/png",
    AttachmentType.PDF: "application/pdf",
    AttachmentType.AUDIO: "audio/mpeg",
    AttachmentType.VIDEO: "video/mp4",
    AttachmentType.FILE: "application/octet-stream",
}


def mime_type_of(attachment: Attachment) -> str:
    if attachment.mime_type:
        return attachment.mime_type
    guessed, _ = mimetypes.guess_type(attachment.name)
    return guessed or DEFAULT_MIME[attachment.type]


def data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class BlobStore(ABC):
    @abstractmethod
    async def get(self, content_id: str) -> bytes:
        """Raises NotFound when the blob is gone."""


class LocalBlobStore(BlobStore):
    """Blobs as files under a root directory, named by content id."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, content_id: str) -> Path:
        path = (self.root / content_id).resolve()
        if self.root.resolve() not in path.parents:
            raise NotFound(f"Blob not found: {content_id}")
        return path

    async def get(self, content_id: str) -> bytes:
        path = self._path(content_id)
        if not path.exists():
            raise NotFound(f"Blob not found: {content_id}")
        return await asyncio.to_thread(path.read_bytes)

    async def put(self, content_id: str, data: bytes) -> None:
        path = self._path(content_id)
        await asyncio.to_thread(path.write_bytes, data)


class UploadCache:
    """
    Provider upload references for one request.

    Concurrent generations may both miss and upload the same blob; the
    last writer wins and either reference is valid. Entries are never
    invalidated while the request lives.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], Any] = {}
        self.uploads = 0

    def get(self, content_id: str, provider: str) -> Any:
        return self._entries.get((content_id, provider))

    async def get_or_upload(
        self,
        content_id: str,
        provider: str,
        upload: Callable[[], Awaitable[Any]],
    ) -> Any:
        key = (content_id, provider)
        if key in self._entries:
            return self._entries[key]
        ref = await upload()
        self.uploads += 1
        self._entries[key] = ref
        logger.debug(f"📎 Uploaded {content_id} to {provider}")
        return ref
