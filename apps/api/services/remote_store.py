"""Remote stores for staged artifacts.

``put`` returns an opaque staged reference; ``delete`` may fail independently
of any metadata cleanup and is safe to repeat.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import threading
import uuid
from pathlib import Path
from typing import Optional

import httpx

from services.errors import StageFailed
from services.formats import content_type_for

logger = logging.getLogger(__name__)


class RemoteDeleteError(Exception):
    """Remote object could not be removed; the caller retries later."""


def _object_key(path: Path) -> str:
    return f"{uuid.uuid4().hex}{path.suffix.lower()}"


class FilesystemRemoteStore:
    """Stores artifacts under a shared directory (mounted volume, NFS, ...)."""

    def __init__(self, root: str):
        self.root = Path(root)

    def path_for(self, staged_ref: str) -> Path:
        candidate = (self.root / staged_ref).resolve()
        if self.root.resolve() not in candidate.parents:
            raise ValueError(f"Staged ref escapes storage root: {staged_ref}")
        return candidate

    @staticmethod
    def _copy_into(source: Path, target: Path, abandoned: threading.Event, lock: threading.Lock) -> None:
        partial = target.with_name(target.name + ".part")
        try:
            shutil.copyfile(str(source), str(partial))
            with lock:
                if abandoned.is_set():
                    partial.unlink(missing_ok=True)
                else:
                    partial.replace(target)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

    async def put(self, path: Path, *, caption: Optional[str] = None) -> str:
        """Copy `path` in under a fresh key.

        The key only appears once the copy is complete. A put cancelled by its
        caller leaves nothing behind, even when the copy thread outlives it.
        """
        key = _object_key(path)
        target = self.root / key
        abandoned = threading.Event()
        lock = threading.Lock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(self._copy_into, path, target, abandoned, lock)
        except asyncio.CancelledError:
            with lock:
                abandoned.set()
            target.unlink(missing_ok=True)
            raise
        except OSError as exc:
            logger.warning("Could not stage %s: %s", path, exc)
            raise StageFailed() from exc
        if caption:
            logger.info("Staged %s as %s (%s)", path.name, key, caption)
        return key

    async def delete(self, staged_ref: str) -> None:
        try:
            target = self.path_for(staged_ref)
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except (OSError, ValueError) as exc:
            raise RemoteDeleteError(str(exc)) from exc


class HttpRemoteStore:
    """Object storage reached over a simple PUT/DELETE HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str = "",
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def put(self, path: Path, *, caption: Optional[str] = None) -> str:
        key = _object_key(path)
        headers = {"Content-Type": content_type_for(path.suffix)}
        if caption:
            headers["X-Caption"] = caption
        try:
            content = await asyncio.to_thread(path.read_bytes)
            async with self._client() as client:
                response = await client.put(f"/objects/{key}", content=content, headers=headers)
                response.raise_for_status()
        except (OSError, httpx.HTTPError) as exc:
            logger.warning("Could not stage %s: %s", path, exc)
            raise StageFailed() from exc
        return key

    async def delete(self, staged_ref: str) -> None:
        try:
            async with self._client() as client:
                response = await client.delete(f"/objects/{staged_ref}")
        except httpx.HTTPError as exc:
            raise RemoteDeleteError(str(exc)) from exc
        # Already gone counts as deleted.
        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise RemoteDeleteError(f"DELETE {staged_ref} returned {response.status_code}")


def build_remote_store(backend: str, *, storage_dir: str, base_url: str, api_token: str, timeout_seconds: float):
    if backend == "http":
        return HttpRemoteStore(base_url, api_token=api_token, timeout_seconds=timeout_seconds)
    return FilesystemRemoteStore(storage_dir)
