import asyncio
import shutil
import threading
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from config import Settings
from services.converter import build_converter_service
from services.errors import DownloadFailed, FileTooLarge, StageFailed
from services.media_source import HttpMediaSource
from services.remote_store import FilesystemRemoteStore, HttpRemoteStore, RemoteDeleteError


@pytest.mark.asyncio
async def test_filesystem_store_put_and_repeatable_delete(tmp_path):
    artifact = tmp_path / "clip_720p.MP4"
    artifact.write_bytes(b"video-bytes")
    store = FilesystemRemoteStore(str(tmp_path / "storage"))

    staged_ref = await store.put(artifact, caption="Converted by user 1 | Format: 720p")

    assert staged_ref.endswith(".mp4")
    assert store.path_for(staged_ref).read_bytes() == b"video-bytes"

    await store.delete(staged_ref)
    await store.delete(staged_ref)
    assert not store.path_for(staged_ref).exists()


@pytest.mark.asyncio
async def test_filesystem_store_put_that_times_out_leaves_no_object(tmp_path):
    artifact = tmp_path / "clip_720p.mp4"
    artifact.write_bytes(b"video-bytes")
    store = FilesystemRemoteStore(str(tmp_path / "storage"))
    release = threading.Event()
    copied = threading.Event()
    real_copyfile = shutil.copyfile

    def slow_copyfile(source, destination):
        release.wait(timeout=5)
        real_copyfile(source, destination)
        copied.set()

    with patch("services.remote_store.shutil.copyfile", side_effect=slow_copyfile):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(store.put(artifact), timeout=0.05)
        release.set()
        assert await asyncio.to_thread(copied.wait, 5)

    for _ in range(100):
        if not any(store.root.iterdir()):
            break
        await asyncio.sleep(0.01)
    assert list(store.root.iterdir()) == []


@pytest.mark.asyncio
async def test_filesystem_store_rejects_escaping_refs(tmp_path):
    store = FilesystemRemoteStore(str(tmp_path / "storage"))

    with pytest.raises(RemoteDeleteError):
        await store.delete("../outside.txt")


@pytest.mark.asyncio
async def test_filesystem_store_missing_artifact_fails_stage(tmp_path):
    store = FilesystemRemoteStore(str(tmp_path / "storage"))

    with pytest.raises(StageFailed):
        await store.put(tmp_path / "missing.mp3")


@pytest.mark.asyncio
async def test_http_store_puts_with_caption_and_tolerates_missing_on_delete(tmp_path):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "PUT":
            return httpx.Response(201)
        if request.url.path.endswith("gone.mp3"):
            return httpx.Response(404)
        if request.url.path.endswith("locked.mp3"):
            return httpx.Response(500)
        return httpx.Response(204)

    artifact = tmp_path / "song_mp3.mp3"
    artifact.write_bytes(b"mp3")
    store = HttpRemoteStore(
        "https://storage.test/",
        api_token="secret",
        transport=httpx.MockTransport(handler),
    )

    staged_ref = await store.put(artifact, caption="Converted by user 9 | Format: mp3")
    put_request = requests[0]
    assert put_request.url == f"https://storage.test/objects/{staged_ref}"
    assert put_request.headers["Authorization"] == "Bearer secret"
    assert put_request.headers["Content-Type"] == "audio/mpeg"
    assert put_request.headers["X-Caption"] == "Converted by user 9 | Format: mp3"
    assert put_request.content == b"mp3"

    await store.delete(staged_ref)
    await store.delete("gone.mp3")
    with pytest.raises(RemoteDeleteError):
        await store.delete("locked.mp3")


@pytest.mark.asyncio
async def test_http_store_put_failure_raises_stage_failed(tmp_path):
    artifact = tmp_path / "clip.mp4"
    artifact.write_bytes(b"x")
    store = HttpRemoteStore(
        "https://storage.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )

    with pytest.raises(StageFailed):
        await store.put(artifact)


@pytest.mark.asyncio
async def test_media_source_streams_relative_refs_from_base_url(tmp_path):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"a" * 1000)

    source = HttpMediaSource(
        "https://files.test/bot/",
        max_bytes=2048,
        transport=httpx.MockTransport(handler),
    )
    destination = tmp_path / "work" / "source"

    result = await source.fetch("videos/file_1.mp4", destination)

    assert result == destination
    assert destination.read_bytes() == b"a" * 1000
    assert seen == ["https://files.test/bot/videos/file_1.mp4"]
    assert source.resolve_url("https://cdn.test/x.mp3") == "https://cdn.test/x.mp3"


@pytest.mark.asyncio
async def test_media_source_enforces_size_and_cleans_up(tmp_path):
    source = HttpMediaSource(
        "https://files.test",
        max_bytes=100,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"b" * 500)),
    )
    destination = tmp_path / "source"

    with pytest.raises(FileTooLarge):
        await source.fetch("big.mp4", destination)
    assert not destination.exists()


@pytest.mark.asyncio
async def test_media_source_http_errors_become_download_failed(tmp_path):
    source = HttpMediaSource(
        "https://files.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )
    destination = tmp_path / "source"

    with pytest.raises(DownloadFailed):
        await source.fetch("missing.mp4", destination)
    assert not destination.exists()

    with pytest.raises(DownloadFailed):
        HttpMediaSource().resolve_url("relative/path.mp4")


def test_media_source_is_used_by_default_pipeline(tmp_path):
    service = build_converter_service(
        Settings(
            SESSION_BACKEND="memory",
            STORAGE_DIR=str(tmp_path / "storage"),
            MEDIA_SOURCE_BASE_URL="https://files.test",
        ),
        session_maker=object(),
    )

    assert isinstance(service.pipeline.media_source, HttpMediaSource)
    assert service.pipeline.media_source.max_bytes == 50 * 1024 * 1024
    assert isinstance(service.pipeline.remote_store, FilesystemRemoteStore)
    assert Path(service.pipeline.remote_store.root) == tmp_path / "storage"
