"""Durable cache for resolved creative media.

WHAT:
    Downloads a resolved media URL (Meta CDN links expire) and stores it under
    MEDIA_CACHE_ROOT, returning the public URL the file is served at.

WHY:
    - Meta CDN URLs are signed and stop working after a few days; analysis
      consumers need a stable copy.
    - Writes go to a temp file in the destination directory and are renamed
      into place, so a failed download never leaves a truncated entry.

PATH LAYOUT:
    workspaces/{workspace_id}/{media_type}s/{ad_id}/{epoch_ms}_{file_id}.{ext}

REFERENCES:
    - adsync/services/creative_service.py (caches the resolved HD image)
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
import uuid
from pathlib import Path
from typing import Callable, NamedTuple, Optional

import httpx

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "video", "thumbnail")
_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")
_CHUNK_SIZE = 64 * 1024
_FILE_MODE = 0o644

_EXTENSIONS = {
    "jpeg": "jpg",
    "jpg": "jpg",
    "png": "png",
    "gif": "gif",
    "webp": "webp",
    "mp4": "mp4",
    "webm": "webm",
    "quicktime": "mov",
}


class MediaCacheError(Exception):
    """Download or write failure; nothing was stored."""


class CachedMedia(NamedTuple):
    url: str
    size_bytes: int


def extension_for_content_type(content_type: Optional[str]) -> str:
    """Map a Content-Type header to a file extension (`bin` when unknown)."""
    if not content_type:
        return "bin"
    subtype = content_type.split(";", 1)[0].strip().lower().rsplit("/", 1)[-1]
    return _EXTENSIONS.get(subtype, "bin")


class MediaCache:
    """Filesystem-backed media cache served under a public base URL."""

    def __init__(
        self,
        root: str | os.PathLike,
        public_base_url: str,
        *,
        max_bytes: int = 10 * 1024 * 1024,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.max_bytes = max_bytes
        self._clock = clock
        self._http = httpx.Client(timeout=timeout, follow_redirects=True, transport=transport)

    @classmethod
    def from_settings(cls, settings) -> "MediaCache":
        return cls(
            settings.MEDIA_CACHE_ROOT,
            settings.MEDIA_CACHE_PUBLIC_URL,
            max_bytes=settings.MEDIA_CACHE_MAX_BYTES,
        )

    def close(self) -> None:
        self._http.close()

    def relative_path(self, tenant: object, ad_id: str, media_type: str, extension: str) -> str:
        tenant_segment = str(tenant)
        for segment in (tenant_segment, str(ad_id)):
            if not _SAFE_SEGMENT.match(segment):
                raise MediaCacheError(f"Unsafe path segment: {segment!r}")
        timestamp_ms = int(self._clock() * 1000)
        file_id = uuid.uuid4().hex[:12]
        return f"workspaces/{tenant_segment}/{media_type}s/{ad_id}/{timestamp_ms}_{file_id}.{extension}"

    def cache(self, tenant: object, ad_id: str, media_type: str, source_url: str) -> CachedMedia:
        """Download `source_url` and store it for (tenant, ad).

        Returns:
            CachedMedia(url, size_bytes)

        Raises:
            ValueError: Unknown media type.
            MediaCacheError: HTTP failure, oversize body, empty body or write failure.
        """
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"media_type must be one of {MEDIA_TYPES}, got {media_type!r}")
        if not source_url:
            raise MediaCacheError("No source URL to cache")

        tmp_path: Optional[str] = None
        try:
            with self._http.stream("GET", source_url) as response:
                if not response.is_success:
                    raise MediaCacheError(f"Download failed: HTTP {response.status_code}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise MediaCacheError(f"Media too large: {declared} bytes (max {self.max_bytes})")

                extension = extension_for_content_type(response.headers.get("content-type"))
                relative = self.relative_path(tenant, ad_id, media_type, extension)
                destination = self.root / relative
                destination.parent.mkdir(parents=True, exist_ok=True)

                fd, tmp_path = tempfile.mkstemp(dir=destination.parent, suffix=".part")
                size = 0
                with os.fdopen(fd, "wb") as handle:
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        size += len(chunk)
                        if size > self.max_bytes:
                            raise MediaCacheError(f"Media exceeded {self.max_bytes} bytes while downloading")
                        handle.write(chunk)

            if size == 0:
                raise MediaCacheError("Downloaded media is empty")

            # mkstemp creates 0600
            os.chmod(tmp_path, _FILE_MODE)
            os.replace(tmp_path, destination)
            tmp_path = None
        except httpx.HTTPError as exc:
            raise MediaCacheError(f"Download failed: {type(exc).__name__}: {exc}") from exc
        except OSError as exc:
            raise MediaCacheError(f"Write failed: {exc}") from exc
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        public_url = f"{self.public_base_url}/{relative}"
        logger.info("[MEDIA_CACHE] Cached %s for ad %s (%d bytes) -> %s", media_type, ad_id, size, relative)
        return CachedMedia(url=public_url, size_bytes=size)
