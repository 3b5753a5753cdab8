import asyncio

import pytest
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.user import User
from services.credits import (
    InsufficientCreditsError,
    LedgerError,
    consume_credits,
    ensure_credit_account,
    get_credit_balance,
    get_credit_transactions,
    grant_credits,
    has_sufficient_credits,
    refund_credits,
)


@pytest.mark.asyncio
async def test_ensure_credit_account_grants_welcome_credits_once(session_maker):
    async with session_maker() as db:
        db.add(User(id="new-merchant", email="new@shop.test"))
        await db.commit()

        first = await ensure_credit_account("new-merchant", db)
        second = await ensure_credit_account("new-merchant", db)
        entries = (
            await db.execute(select(CreditTransaction).where(CreditTransaction.user_id == "new-merchant"))
        ).scalars().all()

    assert first == {"total": 3000, "used": 0, "available": 3000}
    assert second == first
    assert len(entries) == 1
    assert entries[0].feature_type == "welcome_grant"
    assert entries[0].transaction_type == "credit"


@pytest.mark.asyncio
async def test_consume_credits_debits_and_logs_reference(session_maker, seed_merchant):
    await seed_merchant("ledger-user", total=5000)
    async with session_maker() as db:
        result = await consume_credits(
            "ledger-user",
            db,
            amount=2000,
            description="Pipeline generation: 2 image(s)",
            reference_type="pipeline_execution",
            reference_id="exec-1",
        )
        balance = await get_credit_balance("ledger-user", db)
        entry = (
            await db.execute(select(CreditTransaction).where(CreditTransaction.id == result["transaction_id"]))
        ).scalar_one()

    assert result["charged"] == 2000
    assert result["balance_after"] == 3000
    assert balance == {"total": 5000, "used": 2000, "available": 3000}
    assert entry.transaction_type == "debit"
    assert entry.reference_id == "exec-1"
    assert entry.balance_after == 3000


@pytest.mark.asyncio
async def test_consume_credits_insufficient_changes_nothing(session_maker, seed_merchant):
    await seed_merchant("poor-user", total=500)
    async with session_maker() as db:
        assert await has_sufficient_credits("poor-user", 1000, db) is False
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await consume_credits("poor-user", db, amount=1000, description="too much")
        balance = await get_credit_balance("poor-user", db)
        entries = await get_credit_transactions("poor-user", db)

    assert exc_info.value.required == 1000
    assert exc_info.value.available == 500
    assert balance["available"] == 500
    assert entries == []


@pytest.mark.asyncio
async def test_concurrent_consumers_never_overspend(session_maker, seed_merchant):
    await seed_merchant("busy-user", total=3000)

    async def _consume():
        async with session_maker() as db:
            try:
                await consume_credits("busy-user", db, amount=1000, description="race")
                return True
            except InsufficientCreditsError:
                return False

    outcomes = await asyncio.gather(*[_consume() for _ in range(6)])

    async with session_maker() as db:
        balance = await get_credit_balance("busy-user", db)
        debits = [entry for entry in await get_credit_transactions("busy-user", db) if entry["transaction_type"] == "debit"]

    assert sum(outcomes) == 3
    assert balance == {"total": 3000, "used": 3000, "available": 0}
    assert len(debits) == 3


@pytest.mark.asyncio
async def test_refund_returns_credits_tagged_with_execution(session_maker, seed_merchant):
    await seed_merchant("refund-user", total=5000, used=3000)
    async with session_maker() as db:
        result = await refund_credits("refund-user", db, amount=1000, reason="1 failed generation(s)", reference_id="exec-9")
        balance = await get_credit_balance("refund-user", db)
        entries = await get_credit_transactions("refund-user", db)

    assert result["refunded"] == 1000
    assert balance == {"total": 5000, "used": 2000, "available": 3000}
    assert entries[0]["feature_type"] == "refund"
    assert entries[0]["reference_type"] == "pipeline_execution"
    assert entries[0]["reference_id"] == "exec-9"


@pytest.mark.asyncio
async def test_refund_larger_than_recorded_usage_is_granted(session_maker, seed_merchant):
    await seed_merchant("adjusted-user", total=2000, used=500)
    async with session_maker() as db:
        await refund_credits("adjusted-user", db, amount=1000, reason="manual adjustment happened")
        balance = await get_credit_balance("adjusted-user", db)

    assert balance == {"total": 3000, "used": 500, "available": 2500}


@pytest.mark.asyncio
async def test_refund_without_account_raises_ledger_error(session_maker):
    async with session_maker() as db:
        with pytest.raises(LedgerError):
            await refund_credits("ghost", db, amount=1000, reason="nobody home")


@pytest.mark.asyncio
async def test_grant_credits_and_history_newest_first(session_maker, seed_merchant):
    await seed_merchant("grant-user", total=1000)
    async with session_maker() as db:
        await consume_credits("grant-user", db, amount=1000, description="first")
        granted = await grant_credits("grant-user", db, amount=5000, description="Plan refill", feature_type="plan_refill")
        history = await get_credit_transactions("grant-user", db, limit=5)

    assert granted == {"granted": 5000, "balance_after": 5000}
    assert [entry["description"] for entry in history] == ["Plan refill", "first"]

    async with session_maker() as db:
        with pytest.raises(ValueError):
            await grant_credits("grant-user", db, amount=0, description="nothing")
