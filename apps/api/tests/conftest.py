from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Optional, Set

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import Settings
from database import Base
from main import app
from routers import rate_limit
from services.conversion_session import InMemorySessionStore
from services.converter import build_converter_service
from services.errors import DownloadFailed, StageFailed, TranscodeFailed
from services.remote_store import RemoteDeleteError


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._fallback_windows.clear()
    yield
    rate_limit._fallback_windows.clear()
    app.state.disable_rate_limits = previous


class FakeMediaSource:
    def __init__(self, payload: bytes = b"fake-source-media"):
        self.payload = payload
        self.fail_next = 0
        self.fetched = []

    async def fetch(self, source_ref: str, destination: Path) -> Path:
        if self.fail_next:
            self.fail_next -= 1
            raise DownloadFailed("source unavailable")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.payload)
        self.fetched.append(source_ref)
        return destination


class FakeTranscoder:
    def __init__(self):
        self.fail_next = 0
        self.profiles = []

    async def transcode(self, input_path: Path, profile, output_path: Path) -> Path:
        self.profiles.append(profile)
        if self.fail_next:
            self.fail_next -= 1
            raise TranscodeFailed("encoder crashed")
        output_path.write_bytes(b"converted:" + input_path.read_bytes())
        return output_path


class FakeRemoteStore:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.captions: Dict[str, Optional[str]] = {}
        self.failing_deletes: Set[str] = set()
        self.fail_puts = 0
        self.deleted = []
        self._counter = 0

    async def put(self, path: Path, *, caption: Optional[str] = None) -> str:
        if self.fail_puts:
            self.fail_puts -= 1
            raise StageFailed("store unavailable")
        self._counter += 1
        key = f"obj-{self._counter}{path.suffix}"
        self.objects[key] = path.read_bytes()
        self.captions[key] = caption
        return key

    async def delete(self, staged_ref: str) -> None:
        if staged_ref in self.failing_deletes:
            raise RemoteDeleteError(f"cannot delete {staged_ref}")
        self.objects.pop(staged_ref, None)
        self.deleted.append(staged_ref)


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'converter.db'}",
        SESSION_BACKEND="memory",
        WORK_DIR=str(tmp_path / "work"),
        STORAGE_DIR=str(tmp_path / "storage"),
        CREDIT_PER_CONVERSION=1,
        INITIAL_CREDITS=10,
        REFERRAL_BONUS=5,
        DAILY_LIMIT=10,
        MAX_FILE_SIZE_MB=50,
        FILE_DELETE_AFTER_HOURS=24,
        SESSION_TTL_MINUTES=30,
        SWEEP_INTERVAL_MINUTES=0,
        DOWNLOAD_TIMEOUT_SECONDS=5,
        TRANSCODE_TIMEOUT_SECONDS=5,
        STAGE_TIMEOUT_SECONDS=5,
    )
    values.update(overrides)
    return Settings(**values)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'converter.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def fakes():
    return SimpleNamespace(
        media=FakeMediaSource(),
        transcoder=FakeTranscoder(),
        store=FakeRemoteStore(),
    )


@pytest.fixture
def make_service(tmp_path, session_maker, fakes):
    def _make(**overrides):
        return build_converter_service(
            make_settings(tmp_path, **overrides),
            session_maker,
            sessions=InMemorySessionStore(),
            media_source=fakes.media,
            transcoder=fakes.transcoder,
            remote_store=fakes.store,
        )

    return _make
