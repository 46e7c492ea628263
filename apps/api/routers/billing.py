"""Billing and credits router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_current_account
from services.errors import AccountNotFound
from services.ledger import get_balance, list_transactions, serialize_transaction
from services.model_catalog import public_cost_table

router = APIRouter()


@router.get("/credits")
async def credits_summary(
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    balance = await get_balance(account.id, db)
    if balance is None:
        raise AccountNotFound()
    return {
        "account_id": account.id,
        "credits": balance,
        "costs": public_cost_table(),
    }


@router.get("/transactions")
async def transactions(
    limit: int = Query(default=100, ge=1, le=500),
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    entries = await list_transactions(db, account.id, limit=limit)
    return {"transactions": [serialize_transaction(entry) for entry in entries]}
