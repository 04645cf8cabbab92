"""Referral ledger: one bonus per referred account, awarded at creation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.account import Account
from models.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

REFERRAL_PAYLOAD_PREFIX = "ref_"


def parse_referral_payload(payload: Optional[str]) -> Optional[str]:
    """Extract the referrer id from a ``ref_<id>`` start payload."""
    value = (payload or "").strip()
    if not value.startswith(REFERRAL_PAYLOAD_PREFIX):
        return None
    referrer_id = value[len(REFERRAL_PAYLOAD_PREFIX):].strip()
    return referrer_id or None


def build_referral_payload(account_id: str) -> str:
    return f"{REFERRAL_PAYLOAD_PREFIX}{account_id}"


class ReferralLedger:
    def __init__(self, bonus: int):
        self.bonus = max(int(bonus), 0)

    async def award_on_creation(
        self,
        db: AsyncSession,
        referrer_id: Optional[str],
        new_account_id: str,
    ) -> bool:
        """Credit the referrer inside the new account's creation transaction.

        Only ever called from the insert path, so the new account's primary key
        is what makes the award exactly-once. Self and unknown referrers are
        ignored silently.
        """
        if not referrer_id or referrer_id == new_account_id:
            return False

        result = await db.execute(
            update(Account)
            .where(Account.id == referrer_id)
            .values(
                referral_count=Account.referral_count + 1,
                credits=Account.credits + self.bonus,
                last_activity_at=datetime.now(timezone.utc),
            )
            .returning(Account.credits)
            .execution_options(synchronize_session=False)
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            logger.info("Ignoring referral from unknown account %s", referrer_id)
            return False

        if self.bonus:
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    account_id=referrer_id,
                    entry_type="referral_bonus",
                    delta_credits=self.bonus,
                    balance_after=int(balance),
                    reason="Referral bonus",
                    reference_type="account",
                    reference_id=new_account_id,
                )
            )
        logger.info("Referral bonus of %s awarded to %s for %s", self.bonus, referrer_id, new_account_id)
        return True
