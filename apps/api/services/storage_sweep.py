"""Retention sweep for staged artifacts and their conversion records."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import and_, delete, or_
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.conversion_record import ConversionRecord

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    eligible: int = 0
    reclaimed: int = 0
    remote_failures: int = 0
    metadata_failures: int = 0

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "reclaimed": self.reclaimed,
            "remote_failures": self.remote_failures,
            "metadata_failures": self.metadata_failures,
        }


class StorageSweep:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        remote_store,
        *,
        batch_size: int = 500,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_maker = session_maker
        self.remote_store = remote_store
        self.batch_size = max(int(batch_size), 1)
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _expired_page(self, now: datetime, after: Optional[tuple]) -> list:
        """One page of expired records, keyed on (expires_at, id) past `after`."""
        query = select(ConversionRecord.id, ConversionRecord.staged_ref, ConversionRecord.expires_at).where(
            ConversionRecord.expires_at <= now
        )
        if after is not None:
            last_expires_at, last_id = after
            query = query.where(
                or_(
                    ConversionRecord.expires_at > last_expires_at,
                    and_(ConversionRecord.expires_at == last_expires_at, ConversionRecord.id > last_id),
                )
            )
        async with self._session_maker() as db:
            result = await db.execute(
                query.order_by(ConversionRecord.expires_at.asc(), ConversionRecord.id.asc()).limit(self.batch_size)
            )
            return result.all()

    async def _expired(self, now: datetime):
        after = None
        while True:
            page = await self._expired_page(now, after)
            if not page:
                return
            for row in page:
                yield row.id, row.staged_ref
            after = (page[-1].expires_at, page[-1].id)

    async def _delete_record(self, record_id: str) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(
                delete(ConversionRecord)
                .where(ConversionRecord.id == record_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return bool(result.rowcount)

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        """Reclaim every expired record whose remote object could be deleted.

        Records are paged `batch_size` at a time until none remain. Per-record
        failures are logged and left for the next run; they never abort the run.
        """
        report = SweepReport()
        # Overlapping runs in one process would only race on the same rows.
        async with self._lock:
            async for record_id, staged_ref in self._expired(now or self._clock()):
                report.eligible += 1
                try:
                    await self.remote_store.delete(staged_ref)
                except Exception as exc:
                    report.remote_failures += 1
                    logger.warning("Failed to delete staged artifact %s (record %s): %s", staged_ref, record_id, exc)
                    continue
                try:
                    if await self._delete_record(record_id):
                        report.reclaimed += 1
                except Exception as exc:
                    report.metadata_failures += 1
                    logger.warning("Failed to delete conversion record %s: %s", record_id, exc)

        if report.eligible:
            logger.info(
                "Storage sweep: eligible=%s reclaimed=%s remote_failures=%s metadata_failures=%s",
                report.eligible,
                report.reclaimed,
                report.remote_failures,
                report.metadata_failures,
            )
        return report
