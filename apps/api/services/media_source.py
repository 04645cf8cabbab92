"""Fetch uploaded media behind a source reference into transient storage."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import httpx

from services.errors import DownloadFailed, FileTooLarge

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 256


class HttpMediaSource:
    """Streams a source reference over HTTP(S).

    Absolute URLs are fetched as-is; anything else is treated as a path relative
    to ``base_url`` (e.g. a bot platform's file download endpoint).
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        max_bytes: Optional[int] = None,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def resolve_url(self, source_ref: str) -> str:
        ref = (source_ref or "").strip()
        if ref.startswith("http://") or ref.startswith("https://"):
            return ref
        if not self.base_url:
            raise DownloadFailed(f"Cannot resolve relative source ref without a base URL: {ref}")
        return f"{self.base_url}/{ref.lstrip('/')}"

    async def fetch(self, source_ref: str, destination: Path) -> Path:
        url = self.resolve_url(source_ref)
        destination.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with destination.open("wb") as handle:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            written += len(chunk)
                            if self.max_bytes is not None and written > self.max_bytes:
                                raise FileTooLarge()
                            handle.write(chunk)
        except FileTooLarge:
            destination.unlink(missing_ok=True)
            raise
        except httpx.HTTPError as exc:
            destination.unlink(missing_ok=True)
            logger.warning("Download of %s failed: %s", source_ref, exc)
            raise DownloadFailed() from exc

        logger.info("Downloaded %s (%s bytes)", source_ref, written)
        return destination
