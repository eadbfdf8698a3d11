"""Signed sessions that let an embedded storefront admin call the ledger API."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"
_STORE_DOMAIN = re.compile(r"^[a-z0-9][a-z0-9-]*(\.[a-z0-9-]+)+$")


def normalize_store_id(value: Optional[str]) -> str:
    """Lowercase shop domain; raises ValueError for anything that isn't one."""
    store_id = str(value or "").strip().lower()
    if not _STORE_DOMAIN.match(store_id):
        raise ValueError(f"Not a store domain: {value!r}")
    return store_id


def create_session_token(
    store_id: str,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session for one store's admin; the shop domain is both subject and `shop`."""
    store_id = normalize_store_id(store_id)
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": store_id,
        "shop": store_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "store_id": store_id,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify a store session and return its claims with `sub` normalised.

    Raises ValueError with a client-safe message when the session is unusable.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Store session is invalid or has expired.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Token is not a ledger store session.")

    try:
        store_id = normalize_store_id(payload.get("sub"))
    except ValueError as exc:
        raise ValueError("Store session does not name a store.") from exc
    if payload.get("shop") and str(payload["shop"]).strip().lower() != store_id:
        raise ValueError("Store session shop does not match its subject.")

    payload["sub"] = store_id
    return payload
