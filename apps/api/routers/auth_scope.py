"""Authentication dependencies resolving the calling account."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.account import Account
from services.errors import Unauthorized
from services.ledger import build_starting_grant
from services.session_token import InvalidSessionToken, read_session_claims


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class AccountContext:
    """Snapshot of the authenticated account taken when the request starts."""

    id: str
    email: str
    name: Optional[str]
    picture: Optional[str]
    email_verified: bool
    credits: int


def _snapshot(account: Account) -> AccountContext:
    return AccountContext(
        id=account.id,
        email=account.email,
        name=account.name,
        picture=account.picture,
        email_verified=account.email_verified_at is not None,
        credits=int(account.credits or 0),
    )


async def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the session from a Bearer token or the session cookie."""
    token = None
    if credentials and credentials.scheme.lower() == "bearer":
        token = credentials.credentials
    if not token:
        token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        raise Unauthorized()

    try:
        claims = read_session_claims(token)
    except InvalidSessionToken as exc:
        raise Unauthorized() from exc

    return AuthContext(account_id=claims.account_id, email=claims.email, name=claims.name)


async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> AccountContext:
    """Load the account, creating it with the starting grant on first sight."""
    result = await db.execute(select(Account).where(Account.id == auth.account_id))
    account = result.scalar_one_or_none()
    if account:
        return _snapshot(account)

    if not auth.email:
        raise Unauthorized()

    account = Account(
        id=auth.account_id,
        email=auth.email,
        name=auth.name,
        picture=None,
        email_verified_at=None,
        credits=max(int(settings.STARTING_CREDITS), 0),
    )
    db.add(account)
    db.add(build_starting_grant(auth.account_id))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(Account).where(Account.id == auth.account_id))
        existing = result.scalar_one_or_none()
        if not existing:
            raise Unauthorized()
        return _snapshot(existing)
    return _snapshot(account)
