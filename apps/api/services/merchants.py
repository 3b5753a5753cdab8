"""Merchant bootstrap: the user row plus its credit account."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.credits import ensure_credit_account

logger = logging.getLogger(__name__)


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def ensure_merchant(
    db: AsyncSession,
    user_id: str,
    *,
    email: Optional[str] = None,
    shop_domain: Optional[str] = None,
) -> User:
    """Return the merchant, creating it (and its welcome grant) on first sight."""
    user = await _get_user(db, user_id)
    if not user:
        user = User(
            id=user_id,
            email=email or f"{user_id}@local.invalid",
            shop_domain=shop_domain,
            subscription_tier="free",
        )
        db.add(user)
        try:
            await db.commit()
            logger.info("Registered merchant %s (%s)", user_id, shop_domain or "no shop domain")
        except IntegrityError:
            await db.rollback()
            user = await _get_user(db, user_id)
            if not user:
                raise
    await ensure_credit_account(user.id, db)
    return user
