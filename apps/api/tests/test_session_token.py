import pytest
from jose import jwt

from config import settings
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


def test_session_token_carries_merchant_and_shop_claims():
    issued = create_session_token("shop-1", email="owner@shop.test", shop_domain="demo.myshopify.com", expires_hours=2)

    claims = decode_session_token(issued["token"])

    assert claims["sub"] == "shop-1"
    assert claims["email"] == "owner@shop.test"
    assert claims["shop"] == "demo.myshopify.com"
    assert claims["exp"] == issued["expires_at"]
    assert claims["exp"] - claims["iat"] == 2 * 3600


def test_optional_claims_are_omitted_when_absent():
    claims = decode_session_token(create_session_token("shop-2")["token"])

    assert "email" not in claims
    assert "shop" not in claims


@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "shop-3", "type": "other_app_session"},
        {"sub": "  ", "type": SESSION_TOKEN_TYPE},
        {"sub": "shop-3", "type": SESSION_TOKEN_TYPE, "exp": 1},
    ],
)
def test_unusable_tokens_are_rejected(claims):
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(ValueError):
        decode_session_token(token)


def test_token_signed_with_another_secret_is_rejected():
    token = jwt.encode({"sub": "shop-4", "type": SESSION_TOKEN_TYPE}, "x" * 32, algorithm="HS256")

    with pytest.raises(ValueError):
        decode_session_token(token)
