"""
Merchant profile for the current session.

Sessions are minted by the storefront app with the shared JWT secret; this
API only verifies them.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import get_credit_balance
from services.merchants import ensure_merchant
from services.step_chain import normalize_tier, quality_for_tier, steps_for_tier

router = APIRouter()


class CurrentMerchantResponse(BaseModel):
    user_id: str
    email: str
    shop_domain: Optional[str] = None
    subscription_tier: str
    quality: str
    enabled_steps: list
    credits_available: int


@router.get("/me", response_model=CurrentMerchantResponse)
async def get_current_merchant(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the merchant profile, registering the merchant on first call."""
    merchant = await ensure_merchant(db, auth.user_id, email=auth.email, shop_domain=auth.shop_domain)
    tier = normalize_tier(merchant.subscription_tier)
    balance = await get_credit_balance(merchant.id, db)
    return CurrentMerchantResponse(
        user_id=merchant.id,
        email=merchant.email,
        shop_domain=merchant.shop_domain,
        subscription_tier=tier,
        quality=quality_for_tier(tier),
        enabled_steps=steps_for_tier(tier),
        credits_available=balance["available"],
    )
