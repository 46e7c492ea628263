"""Signed session tokens identifying the calling account.

Tokens are HS256 JWTs with the account id as ``sub`` and optional
``email``/``name`` claims used to provision the account on first sight.
Clients send them as a Bearer token or in the session cookie.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Response
from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "genai_session"


class InvalidSessionToken(ValueError):
    pass


@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    email: Optional[str]
    name: Optional[str]
    expires_at: int


def create_session_token(
    account_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """Sign a session for ``account_id``; returns ``{"token", "expires_at"}``."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": account_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry, token type and subject; return the raw claims."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidSessionToken("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise InvalidSessionToken("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise InvalidSessionToken("Session token missing subject.")
    return payload


def read_session_claims(token: str) -> SessionClaims:
    payload = decode_session_token(token)
    return SessionClaims(
        account_id=str(payload["sub"]).strip(),
        email=str(payload.get("email") or "").strip() or None,
        name=str(payload.get("name") or "").strip() or None,
        expires_at=int(payload.get("exp") or 0),
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/", httponly=True, samesite="lax")
