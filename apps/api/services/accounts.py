"""Account lifecycle: get-or-create, admin reset and usage statistics."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.account import Account
from models.conversion_record import ConversionRecord
from models.credit_ledger import CreditLedger
from services.errors import AccountNotFound
from services.referrals import ReferralLedger

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AccountSnapshot:
    id: str
    credits: int
    referral_count: int
    usage_count: int
    referrer_id: Optional[str]
    created: bool = False
    referral_awarded: bool = False

    @classmethod
    def from_model(cls, account: Account, **flags) -> "AccountSnapshot":
        return cls(
            id=account.id,
            credits=int(account.credits or 0),
            referral_count=int(account.referral_count or 0),
            usage_count=int(account.usage_count or 0),
            referrer_id=account.referrer_id,
            **flags,
        )


class AccountService:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        *,
        initial_credits: int,
        referrals: ReferralLedger,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self.initial_credits = max(int(initial_credits), 0)
        self.referrals = referrals
        self._clock = clock

    async def _touch_existing(self, db: AsyncSession, account_id: str) -> Optional[AccountSnapshot]:
        result = await db.execute(select(Account).where(Account.id == account_id))
        account = result.scalar_one_or_none()
        if account is None:
            return None
        account.last_activity_at = self._clock()
        await db.commit()
        return AccountSnapshot.from_model(account)

    async def get_or_create(self, account_id: str, referrer_id: Optional[str] = None) -> AccountSnapshot:
        """Return the account, creating it (and awarding any referral) on first contact."""
        async with self._session_maker() as db:
            existing = await self._touch_existing(db, account_id)
            if existing is not None:
                return existing

            now = self._clock()
            account = Account(
                id=account_id,
                credits=self.initial_credits,
                referral_count=0,
                usage_count=0,
                created_at=now,
                last_activity_at=now,
            )
            db.add(account)
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    account_id=account_id,
                    entry_type="signup_grant",
                    delta_credits=self.initial_credits,
                    balance_after=self.initial_credits,
                    reason="Initial free credits",
                )
            )
            try:
                await db.flush()
                awarded = await self.referrals.award_on_creation(db, referrer_id, account_id)
                if awarded:
                    account.referrer_id = referrer_id
                await db.commit()
            except IntegrityError:
                # Lost a creation race; the winner already handled any referral.
                await db.rollback()
                existing = await self._touch_existing(db, account_id)
                if existing is None:
                    raise
                return existing

            logger.info("Created account %s (referral awarded: %s)", account_id, awarded)
            return AccountSnapshot.from_model(account, created=True, referral_awarded=awarded)

    async def get(self, account_id: str) -> AccountSnapshot:
        async with self._session_maker() as db:
            result = await db.execute(select(Account).where(Account.id == account_id))
            account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(account_id)
        return AccountSnapshot.from_model(account)

    async def record_usage(self, db: AsyncSession, account_id: str) -> None:
        account = await db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        account.usage_count = int(account.usage_count or 0) + 1

    async def reset(self, account_id: str) -> AccountSnapshot:
        """Restore credits, referral and usage counters; identity and history stay."""
        async with self._session_maker() as db:
            result = await db.execute(select(Account).where(Account.id == account_id))
            account = result.scalar_one_or_none()
            if account is None:
                raise AccountNotFound(account_id)

            previous = int(account.credits or 0)
            account.credits = self.initial_credits
            account.referral_count = 0
            account.usage_count = 0
            account.last_activity_at = self._clock()
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    account_id=account_id,
                    entry_type="reset",
                    delta_credits=self.initial_credits - previous,
                    balance_after=self.initial_credits,
                    reason="Administrative reset",
                )
            )
            await db.commit()
            logger.info("Reset account %s (credits %s -> %s)", account_id, previous, self.initial_credits)
            return AccountSnapshot.from_model(account)

    async def get_stats(self) -> Dict[str, Any]:
        active_cutoff = self._clock() - timedelta(days=ACTIVE_WINDOW_DAYS)
        async with self._session_maker() as db:
            total_accounts = await db.execute(select(func.count(Account.id)))
            active_accounts = await db.execute(
                select(func.count(Account.id)).where(Account.last_activity_at >= active_cutoff)
            )
            total_conversions = await db.execute(select(func.count(ConversionRecord.id)))
            return {
                "total_accounts": int(total_accounts.scalar() or 0),
                "active_accounts_7d": int(active_accounts.scalar() or 0),
                "total_conversions": int(total_conversions.scalar() or 0),
            }
