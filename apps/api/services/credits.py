"""Credit ledger: atomic per-account balance mutation and history."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.account import Account
from models.credit_ledger import CreditLedger
from services.errors import AccountNotFound, InsufficientCredits, InvariantViolation

logger = logging.getLogger(__name__)


async def apply_credit_delta(
    db: AsyncSession,
    account_id: str,
    delta: int,
    *,
    entry_type: str,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Apply ``delta`` as one conditional UPDATE inside the caller's transaction.

    A negative delta only matches when the resulting balance stays >= 0, so two
    concurrent debits can never both pass the sufficiency check. The caller
    commits.
    """
    delta = int(delta)
    stmt = update(Account).where(Account.id == account_id)
    if delta < 0:
        stmt = stmt.where(Account.credits + delta >= 0)
    stmt = (
        stmt.values(credits=Account.credits + delta, last_activity_at=datetime.now(timezone.utc))
        .returning(Account.credits)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()

    if new_balance is None:
        exists = await db.execute(select(Account.id).where(Account.id == account_id))
        if exists.scalar_one_or_none() is None:
            raise AccountNotFound(account_id)
        raise InsufficientCredits()

    if int(new_balance) < 0:
        logger.error("Negative balance observed for account %s after delta %s", account_id, delta)
        raise InvariantViolation(f"Negative balance observed for account {account_id}.")

    db.add(
        CreditLedger(
            id=str(uuid.uuid4()),
            account_id=account_id,
            entry_type=entry_type,
            delta_credits=delta,
            balance_after=int(new_balance),
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
    )
    await db.flush()
    return int(new_balance)


class CreditService:
    """Owns per-account balances; every mutation is its own short transaction."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def read(self, account_id: str) -> int:
        async with self._session_maker() as db:
            result = await db.execute(select(Account.credits).where(Account.id == account_id))
            balance = result.scalar_one_or_none()
        if balance is None:
            raise AccountNotFound(account_id)
        return int(balance)

    async def apply(
        self,
        account_id: str,
        amount: int,
        *,
        entry_type: str,
        reason: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> int:
        async with self._session_maker() as db:
            try:
                balance = await apply_credit_delta(
                    db,
                    account_id,
                    amount,
                    entry_type=entry_type,
                    reason=reason,
                    reference_type=reference_type,
                    reference_id=reference_id,
                )
            except Exception:
                await db.rollback()
                raise
            await db.commit()
        return balance

    async def debit(self, account_id: str, amount: int, **entry) -> int:
        """Remove `amount` credits; a negative amount adds them back."""
        entry.setdefault("entry_type", "debit")
        return await self.apply(account_id, -int(amount), **entry)

    async def credit(self, account_id: str, amount: int, **entry) -> int:
        entry.setdefault("entry_type", "credit")
        return await self.apply(account_id, int(amount), **entry)

    async def recent_entries(self, account_id: str, limit: int = 30) -> list[dict]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(CreditLedger)
                .where(CreditLedger.account_id == account_id)
                .order_by(CreditLedger.created_at.desc())
                .limit(limit)
            )
            entries = result.scalars().all()
        return [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ]
