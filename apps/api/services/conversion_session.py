"""Per-account conversion sessions: at most one pending upload per account."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import redis.asyncio as redis

from services.errors import SessionNotFound

SESSION_KEY_PREFIX = "mcv:session:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversionSession:
    session_id: str
    account_id: str
    source_ref: str
    media_kind: str
    display_name: str
    byte_size: int
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        payload["expires_at"] = self.expires_at.isoformat()
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str) -> "ConversionSession":
        payload = json.loads(raw)
        payload["created_at"] = datetime.fromisoformat(payload["created_at"])
        payload["expires_at"] = datetime.fromisoformat(payload["expires_at"])
        payload["byte_size"] = int(payload.get("byte_size") or 0)
        return cls(**payload)


class SessionStore:
    """Base store; backends implement the raw save/take/get/delete primitives.

    ``take_and_clear`` is the single-use guarantee: the backend primitive must
    read and delete in one atomic step.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock

    async def open(
        self,
        account_id: str,
        *,
        source_ref: str,
        media_kind: str,
        display_name: str,
        byte_size: int,
        ttl: timedelta,
    ) -> ConversionSession:
        """Replace any live session for the account with a fresh one."""
        now = self._clock()
        session = ConversionSession(
            session_id=str(uuid.uuid4()),
            account_id=account_id,
            source_ref=source_ref,
            media_kind=media_kind,
            display_name=display_name,
            byte_size=int(byte_size),
            created_at=now,
            expires_at=now + ttl,
        )
        await self._save(session, ttl)
        return session

    async def take_and_clear(self, account_id: str) -> ConversionSession:
        session = await self._take(account_id)
        if session is None or session.is_expired(self._clock()):
            raise SessionNotFound()
        return session

    async def peek(self, account_id: str) -> Optional[ConversionSession]:
        session = await self._get(account_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    async def cancel(self, account_id: str) -> bool:
        return await self._delete(account_id)

    async def _save(self, session: ConversionSession, ttl: timedelta) -> None:
        raise NotImplementedError

    async def _take(self, account_id: str) -> Optional[ConversionSession]:
        raise NotImplementedError

    async def _get(self, account_id: str) -> Optional[ConversionSession]:
        raise NotImplementedError

    async def _delete(self, account_id: str) -> bool:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    """Process-local store; expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        super().__init__(clock)
        self._sessions: Dict[str, ConversionSession] = {}
        self._lock = asyncio.Lock()

    async def _save(self, session: ConversionSession, ttl: timedelta) -> None:
        async with self._lock:
            self._sessions[session.account_id] = session

    async def _take(self, account_id: str) -> Optional[ConversionSession]:
        async with self._lock:
            return self._sessions.pop(account_id, None)

    async def _get(self, account_id: str) -> Optional[ConversionSession]:
        async with self._lock:
            return self._sessions.get(account_id)

    async def _delete(self, account_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(account_id, None) is not None


class RedisSessionStore(SessionStore):
    """Redis-backed store; key expiry handles eviction, GETDEL gives single use."""

    def __init__(self, client: "redis.Redis", clock: Callable[[], datetime] = _utcnow):
        super().__init__(clock)
        self._redis = client

    @staticmethod
    def _key(account_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{account_id}"

    async def _save(self, session: ConversionSession, ttl: timedelta) -> None:
        ttl_ms = max(int(ttl.total_seconds() * 1000), 1)
        await self._redis.set(self._key(session.account_id), session.to_json(), px=ttl_ms)

    async def _take(self, account_id: str) -> Optional[ConversionSession]:
        raw = await self._redis.getdel(self._key(account_id))
        return ConversionSession.from_json(raw) if raw else None

    async def _get(self, account_id: str) -> Optional[ConversionSession]:
        raw = await self._redis.get(self._key(account_id))
        return ConversionSession.from_json(raw) if raw else None

    async def _delete(self, account_id: str) -> bool:
        return bool(await self._redis.delete(self._key(account_id)))


def build_session_store(backend: str, redis_url: str) -> SessionStore:
    if backend == "memory":
        return InMemorySessionStore()
    return RedisSessionStore(redis.from_url(redis_url, decode_responses=True))
