import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from config import settings
from routers.auth_scope import ensure_store_scope, get_auth_context
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


def _signed(claims):
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def test_session_is_issued_for_the_lowercased_shop_domain():
    session = create_session_token("  Demo.MyShopify.com ")

    payload = decode_session_token(session["token"])

    assert session["store_id"] == "demo.myshopify.com"
    assert payload["sub"] == payload["shop"] == "demo.myshopify.com"


def test_session_cannot_be_issued_for_a_non_domain():
    with pytest.raises(ValueError):
        create_session_token("not a store")


@pytest.mark.parametrize(
    "claims, message",
    [
        ({"sub": "demo.myshopify.com", "type": "access"}, "not a ledger store session"),
        ({"sub": "", "type": SESSION_TOKEN_TYPE}, "does not name a store"),
        ({"sub": "demo.myshopify.com", "shop": "other.myshopify.com", "type": SESSION_TOKEN_TYPE}, "shop does not match"),
    ],
)
def test_unusable_sessions_are_rejected(claims, message):
    with pytest.raises(ValueError, match=message):
        decode_session_token(_signed(claims))


def test_session_signed_with_another_secret_is_rejected():
    forged = jwt.encode(
        {"sub": "demo.myshopify.com", "type": SESSION_TOKEN_TYPE},
        "some-other-secret-value-entirely",
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(ValueError, match="invalid or has expired"):
        decode_session_token(forged)


@pytest.mark.asyncio
async def test_auth_context_carries_store_and_expiry():
    session = create_session_token("demo.myshopify.com")
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=session["token"])

    auth = await get_auth_context(credentials)

    assert auth.store_id == "demo.myshopify.com"
    assert auth.session_expires_at == session["expires_at"]


@pytest.mark.asyncio
async def test_missing_session_is_unauthorised():
    with pytest.raises(HTTPException) as exc:
        await get_auth_context(None)

    assert exc.value.status_code == 401


def test_store_scope_ignores_domain_case_but_not_other_stores():
    assert ensure_store_scope("demo.myshopify.com", "DEMO.myshopify.com") == "demo.myshopify.com"
    assert ensure_store_scope("demo.myshopify.com", None) == "demo.myshopify.com"

    with pytest.raises(HTTPException) as exc:
        ensure_store_scope("demo.myshopify.com", "other.myshopify.com")
    assert exc.value.status_code == 403
