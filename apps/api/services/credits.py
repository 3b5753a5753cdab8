"""Credit ledger: atomic balance mutations and the transaction audit log."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import CreditTransaction

logger = logging.getLogger(__name__)


class InsufficientCreditsError(Exception):
    """Raised when an account cannot cover a requested debit."""

    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient credits. Required: {self.required}, available: {self.available}.")


class LedgerError(RuntimeError):
    """Raised when the ledger itself could not apply a mutation."""


async def get_credit_balance(user_id: str, db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(CreditAccount.total_credits, CreditAccount.used_credits).where(CreditAccount.user_id == user_id)
    )
    row = result.first()
    total = int(row[0] or 0) if row else 0
    used = int(row[1] or 0) if row else 0
    return {"total": total, "used": used, "available": max(total - used, 0)}


async def has_sufficient_credits(user_id: str, amount: int, db: AsyncSession) -> bool:
    """Advisory pre-check only; consume_credits is the authoritative gate."""
    balance = await get_credit_balance(user_id, db)
    return balance["available"] >= max(int(amount), 0)


def _transaction(
    user_id: str,
    *,
    transaction_type: str,
    amount: int,
    balance_after: int,
    description: str,
    feature_type: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        transaction_type=transaction_type,
        amount=int(amount),
        balance_after=int(balance_after),
        description=description,
        feature_type=feature_type,
        reference_type=reference_type,
        reference_id=reference_id,
        created_at=datetime.now(timezone.utc),
    )


async def ensure_credit_account(user_id: str, db: AsyncSession) -> Dict[str, int]:
    """Create the account with the welcome grant the first time a merchant is seen."""
    existing = await db.execute(select(CreditAccount.user_id).where(CreditAccount.user_id == user_id))
    if existing.scalar_one_or_none():
        return await get_credit_balance(user_id, db)

    welcome = max(int(settings.WELCOME_CREDITS), 0)
    db.add(CreditAccount(user_id=user_id, total_credits=welcome, used_credits=0))
    db.add(
        _transaction(
            user_id,
            transaction_type="credit",
            amount=welcome,
            balance_after=welcome,
            description="Welcome credits",
            feature_type="welcome_grant",
        )
    )
    try:
        await db.commit()
        logger.info("Created credit account for %s with %s welcome credits", user_id, welcome)
    except IntegrityError:
        # Another request created the account first.
        await db.rollback()
    return await get_credit_balance(user_id, db)


async def consume_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    feature_type: str = "ai_generation",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Debit the full amount and log it, or change nothing.

    The guard lives in the UPDATE's WHERE clause so concurrent callers for
    the same account can never push available credits below zero.
    """
    debit = max(int(amount), 0)
    if debit == 0:
        balance = await get_credit_balance(user_id, db)
        return {"charged": 0, "balance_after": balance["available"], "transaction_id": None}

    try:
        result = await db.execute(
            update(CreditAccount)
            .where(
                CreditAccount.user_id == user_id,
                CreditAccount.total_credits - CreditAccount.used_credits >= debit,
            )
            .values(used_credits=CreditAccount.used_credits + debit)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            balance = await get_credit_balance(user_id, db)
            raise InsufficientCreditsError(required=debit, available=balance["available"])

        balance = await get_credit_balance(user_id, db)
        entry = _transaction(
            user_id,
            transaction_type="debit",
            amount=debit,
            balance_after=balance["available"],
            description=description,
            feature_type=feature_type,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        db.add(entry)
        await db.commit()
    except InsufficientCreditsError:
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Credit debit failed for {user_id}: {exc}") from exc

    return {"charged": debit, "balance_after": balance["available"], "transaction_id": entry.id}


async def refund_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    reference_id: Optional[str] = None,
    reference_type: str = "pipeline_execution",
) -> Dict[str, Any]:
    """Credit back a previously debited amount, tagged with its origin."""
    credit = max(int(amount), 0)
    if credit == 0:
        balance = await get_credit_balance(user_id, db)
        return {"refunded": 0, "balance_after": balance["available"], "transaction_id": None}

    try:
        result = await db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.used_credits >= credit)
            .values(used_credits=CreditAccount.used_credits - credit)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Recorded usage was adjusted below the refund; grant instead.
            result = await db.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(total_credits=CreditAccount.total_credits + credit)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise LedgerError(f"No credit account for {user_id}; cannot refund {credit} credits.")

        balance = await get_credit_balance(user_id, db)
        entry = _transaction(
            user_id,
            transaction_type="credit",
            amount=credit,
            balance_after=balance["available"],
            description=reason,
            feature_type="refund",
            reference_type=reference_type,
            reference_id=reference_id,
        )
        db.add(entry)
        await db.commit()
    except LedgerError:
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Credit refund failed for {user_id}: {exc}") from exc

    logger.info("Refunded %s credits to %s (%s)", credit, user_id, reference_id)
    return {"refunded": credit, "balance_after": balance["available"], "transaction_id": entry.id}


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    feature_type: str = "purchase",
) -> Dict[str, Any]:
    grant = max(int(amount), 0)
    if grant <= 0:
        raise ValueError("amount must be greater than 0")

    await ensure_credit_account(user_id, db)
    try:
        await db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(total_credits=CreditAccount.total_credits + grant)
            .execution_options(synchronize_session=False)
        )
        balance = await get_credit_balance(user_id, db)
        db.add(
            _transaction(
                user_id,
                transaction_type="credit",
                amount=grant,
                balance_after=balance["available"],
                description=description,
                feature_type=feature_type,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Credit grant failed for {user_id}: {exc}") from exc
    return {"granted": grant, "balance_after": balance["available"]}


async def get_credit_transactions(user_id: str, db: AsyncSession, limit: int = 20) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(max(min(int(limit), 100), 1))
    )
    return [
        {
            "id": entry.id,
            "transaction_type": entry.transaction_type,
            "amount": entry.amount,
            "balance_after": entry.balance_after,
            "description": entry.description,
            "feature_type": entry.feature_type,
            "reference_type": entry.reference_type,
            "reference_id": entry.reference_id,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]
