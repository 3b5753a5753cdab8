"""
Merchant session tokens.

The storefront app signs these with the shared ``JWT_SECRET`` once the shop
has installed the app; this API only verifies them. ``sub`` is the merchant
user id. ``email`` and ``shop`` are optional profile hints used when a
merchant is registered on first sight.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "trayve_session"
MIN_TTL_HOURS = 1


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    shop_domain: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    issued_at = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), MIN_TTL_HOURS)
    expires_at = issued_at + timedelta(hours=ttl_hours)

    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    claims.update({key: value for key, value in (("email", email), ("shop", shop_domain)) if value})

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verified claims of a merchant session; ValueError for anything unusable."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Session token is invalid or has expired.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Not a merchant session token.")
    if not str(payload.get("sub") or "").strip():
        raise ValueError("Session token carries no merchant id.")
    return payload
