"""Daily usage counter derived from conversion records and settlement debits."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, union
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.conversion_record import ConversionRecord
from models.credit_ledger import CreditLedger


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class DailyUsageCounter:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        daily_limit: int,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_maker = session_maker
        # 0 permits no conversions at all.
        self.daily_limit = max(int(daily_limit), 0)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def count_today(self, account_id: str) -> int:
        """Distinct conversions since midnight.

        A conversion counts while its record exists and, once settled, through
        its ledger debit, which outlives the record when the sweep removes it.
        """
        since = start_of_day(self._clock())
        conversions = union(
            select(ConversionRecord.id.label("conversion_id")).where(
                ConversionRecord.account_id == account_id,
                ConversionRecord.created_at >= since,
            ),
            select(CreditLedger.reference_id.label("conversion_id")).where(
                CreditLedger.account_id == account_id,
                CreditLedger.entry_type == "debit",
                CreditLedger.reference_type == "conversion_record",
                CreditLedger.created_at >= since,
            ),
        ).subquery()
        async with self._session_maker() as db:
            result = await db.execute(select(func.count()).select_from(conversions))
            return int(result.scalar() or 0)

    async def limit_reached(self, account_id: str) -> bool:
        return await self.count_today(account_id) >= self.daily_limit
