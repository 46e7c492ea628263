"""
Authentication router exposing the signed-in account profile.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_current_account
from services.accounts import delete_account
from services.session_token import clear_session_cookie

router = APIRouter()


class CurrentAccountResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool = False
    credits: int


@router.get("/me", response_model=CurrentAccountResponse)
async def get_me(account: AccountContext = Depends(get_current_account)):
    """Get the current account profile and credit balance."""
    return CurrentAccountResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        picture=account.picture,
        email_verified=account.email_verified,
        credits=account.credits,
    )


@router.post("/logout")
async def logout(response: Response, _account: AccountContext = Depends(get_current_account)):
    """Drop the session cookie; Bearer tokens simply expire."""
    clear_session_cookie(response)
    return {"message": "Logged out successfully"}


@router.delete("/account")
async def delete_my_account(
    response: Response,
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Delete the account, its history and its stored generations."""
    removed_files = await delete_account(db, account.id)
    clear_session_cookie(response)
    return {"success": True, "removedFiles": removed_files}
