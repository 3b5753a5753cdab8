"""Credit balance and ledger history for the signed-in merchant."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.credits import get_credit_balance, get_credit_transactions
from services.merchants import ensure_merchant

router = APIRouter()


class CreditBalanceResponse(BaseModel):
    user_id: str
    total: int
    used: int
    available: int
    credits_per_image: int
    images_available: int


@router.get("/balance", response_model=CreditBalanceResponse)
async def credit_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_merchant(db, scoped_user_id, email=auth.email, shop_domain=auth.shop_domain)
    balance = await get_credit_balance(scoped_user_id, db)
    per_image = max(int(settings.CREDITS_PER_IMAGE), 1)
    return CreditBalanceResponse(
        user_id=scoped_user_id,
        credits_per_image=per_image,
        images_available=balance["available"] // per_image,
        **balance,
    )


@router.get("/transactions")
async def credit_transactions(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await get_credit_transactions(auth.user_id, db, limit=limit)}
