import asyncio

import pytest
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from services.errors import AccountNotFound
from services.referrals import build_referral_payload, parse_referral_payload


async def _entries(session_maker, account_id, entry_type):
    async with session_maker() as session:
        result = await session.execute(
            select(CreditLedger).where(
                CreditLedger.account_id == account_id,
                CreditLedger.entry_type == entry_type,
            )
        )
        return result.scalars().all()


def test_referral_payload_round_trip():
    assert build_referral_payload("123") == "ref_123"
    assert parse_referral_payload("ref_123") == "123"
    assert parse_referral_payload(" ref_abc ") == "abc"
    assert parse_referral_payload("ref_") is None
    assert parse_referral_payload("promo_123") is None
    assert parse_referral_payload(None) is None


@pytest.mark.asyncio
async def test_new_account_awards_referrer_exactly_once(make_service, session_maker):
    service = make_service(REFERRAL_BONUS=5, INITIAL_CREDITS=10)
    await service.start_account("A")

    created = await service.start_account("B", referrer_id="A")
    again = await service.start_account("B", referrer_id="A")

    assert created.created and created.referral_awarded
    assert created.referrer_id == "A"
    assert not again.created and not again.referral_awarded

    referrer = await service.accounts.get("A")
    assert referrer.credits == 15
    assert referrer.referral_count == 1
    bonuses = await _entries(session_maker, "A", "referral_bonus")
    assert [(entry.delta_credits, entry.reference_id) for entry in bonuses] == [(5, "B")]


@pytest.mark.asyncio
async def test_concurrent_first_contacts_award_once(make_service):
    service = make_service(REFERRAL_BONUS=5)
    await service.start_account("A")

    async def attempt():
        try:
            return await service.start_account("B", referrer_id="A")
        except Exception:
            return None

    results = await asyncio.gather(*(attempt() for _ in range(4)))

    assert len([result for result in results if result is not None and result.referral_awarded]) <= 1
    referrer = await service.accounts.get("A")
    assert referrer.referral_count == 1
    assert referrer.credits == 15


@pytest.mark.asyncio
async def test_existing_account_never_earns_a_referral(make_service):
    service = make_service()
    await service.start_account("A")
    await service.start_account("B")

    snapshot = await service.start_account("B", referrer_id="A")

    assert snapshot.referrer_id is None
    assert (await service.accounts.get("A")).referral_count == 0


@pytest.mark.asyncio
async def test_self_and_unknown_referrers_are_ignored(make_service):
    service = make_service()

    own = await service.start_account("C", referrer_id="C")
    orphan = await service.start_account("D", referrer_id="ghost")

    assert not own.referral_awarded and own.referrer_id is None
    assert not orphan.referral_awarded and orphan.referrer_id is None
    assert own.credits == 10
    with pytest.raises(AccountNotFound):
        await service.accounts.get("ghost")


@pytest.mark.asyncio
async def test_reset_restores_counters_and_keeps_history(make_service, session_maker):
    service = make_service(INITIAL_CREDITS=10, REFERRAL_BONUS=5)
    await service.start_account("A")
    await service.start_account("B", referrer_id="A")
    await service.credits.debit("A", 12)
    await service.begin_session("A", source_ref="files/x", byte_size=1, media_kind="audio")

    snapshot = await service.reset_account("A")

    assert (snapshot.credits, snapshot.referral_count, snapshot.usage_count) == (10, 0, 0)
    assert await service.sessions.peek("A") is None
    assert len(await _entries(session_maker, "A", "referral_bonus")) == 1
    resets = await _entries(session_maker, "A", "reset")
    assert [(entry.delta_credits, entry.balance_after) for entry in resets] == [(7, 10)]

    with pytest.raises(AccountNotFound):
        await service.reset_account("nobody")
