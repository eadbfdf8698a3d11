"""Store session dependencies for the billing routes."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    store_id: str
    session_expires_at: Optional[int] = None


def ensure_store_scope(auth_store_id: str, supplied_store_id: Optional[str]) -> str:
    """A session may only read or move its own store's credits."""
    if supplied_store_id and supplied_store_id.strip().lower() != auth_store_id:
        raise HTTPException(status_code=403, detail="Session is not authorised for this store's ledger.")
    return auth_store_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="A Bearer store session is required.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(store_id=payload["sub"], session_expires_at=payload.get("exp"))
