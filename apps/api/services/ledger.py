"""Credit ledger: atomic balance debits, refunds, and purchase settlement."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.transaction import Transaction
from services.errors import AccountNotFound, InsufficientCredits, PaymentNotCompleted, PersistenceFailure

logger = logging.getLogger(__name__)

CREDIT_CURRENCY = "CREDITS"


@dataclass(frozen=True)
class SettlementResult:
    transaction_id: str
    credits_added: int
    balance_after: Optional[int]
    already_settled: bool = False


async def get_balance(account_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(Account.credits).where(Account.id == account_id))
    balance = result.scalar_one_or_none()
    return None if balance is None else int(balance)


async def find_transaction(
    db: AsyncSession,
    *,
    provider: str,
    provider_transaction_id: str,
) -> Optional[Transaction]:
    result = await db.execute(
        select(Transaction).where(
            Transaction.provider == provider,
            Transaction.provider_transaction_id == provider_transaction_id,
        )
    )
    return result.scalar_one_or_none()


async def reserve_credits(db: AsyncSession, account_id: str, cost: int) -> int:
    """Debit ``cost`` credits in one conditional UPDATE and return the new balance.

    The balance check and the debit are a single statement, so concurrent
    reservations can never take the balance below zero.
    """
    debit = max(int(cost), 0)
    if debit == 0:
        balance = await get_balance(account_id, db)
        if balance is None:
            raise AccountNotFound()
        return balance

    try:
        result = await db.execute(
            update(Account)
            .where(Account.id == account_id, Account.credits >= debit)
            .values(credits=Account.credits - debit)
            .returning(Account.credits)
            .execution_options(synchronize_session=False)
        )
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            await db.rollback()
            available = await get_balance(account_id, db)
            if available is None:
                raise AccountNotFound()
            raise InsufficientCredits(required=debit, available=available)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Credit reservation failed for account %s", account_id)
        raise PersistenceFailure() from exc

    logger.info("Reserved %s credits from account %s (balance %s)", debit, account_id, balance_after)
    return int(balance_after)


async def refund_credits(
    db: AsyncSession,
    account_id: str,
    cost: int,
    *,
    reference: str,
    reason: str,
) -> Optional[Transaction]:
    """Re-credit a reservation and append a ``refund`` ledger row.

    ``reference`` identifies the charged invocation; a second refund for the
    same reference is rejected by the ledger's unique key. Failures are logged
    as critical and never raised: callers must not assume the refund landed.
    """
    amount = max(int(cost), 0)
    if amount == 0:
        return None

    entry = Transaction(
        id=str(uuid.uuid4()),
        account_id=account_id,
        amount=0,
        currency=CREDIT_CURRENCY,
        credits=amount,
        status="refund",
        provider="system",
        provider_transaction_id=f"refund:{reference}",
        description=reason[:500],
    )
    try:
        await db.rollback()
        db.add(entry)
        await db.flush()
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(credits=Account.credits + amount)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Refund for %s already recorded; skipping duplicate", reference)
        return None
    except Exception:
        await db.rollback()
        logger.critical(
            "CRITICAL: Failed to refund %s credits to account %s for %s; needs manual reconciliation",
            amount,
            account_id,
            reference,
            exc_info=True,
        )
        return None

    logger.info("Refunded %s credits to account %s for %s", amount, account_id, reference)
    return entry


async def credit_purchase(
    db: AsyncSession,
    account_id: str,
    *,
    credits: int,
    amount: float,
    currency: str,
    provider: str,
    provider_transaction_id: str,
    description: Optional[str] = None,
) -> SettlementResult:
    """Append a ``completed`` purchase row and credit the balance exactly once.

    ``(provider, provider_transaction_id)`` is the idempotency key: a replay
    returns the original settlement instead of crediting again.
    """
    grant = max(int(credits), 0)
    existing = await find_transaction(db, provider=provider, provider_transaction_id=provider_transaction_id)
    if existing is not None:
        return settlement_from_existing(existing, account_id)

    entry = Transaction(
        id=str(uuid.uuid4()),
        account_id=account_id,
        amount=float(amount),
        currency=currency,
        credits=grant,
        status="completed",
        provider=provider,
        provider_transaction_id=provider_transaction_id,
        description=description,
    )
    try:
        db.add(entry)
        await db.flush()
        result = await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(credits=Account.credits + grant)
            .returning(Account.credits)
            .execution_options(synchronize_session=False)
        )
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            await db.rollback()
            raise AccountNotFound()
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find_transaction(db, provider=provider, provider_transaction_id=provider_transaction_id)
        if existing is None:
            raise PersistenceFailure()
        return settlement_from_existing(existing, account_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.critical(
            "CRITICAL: Failed to credit %s credits for %s payment %s to account %s; needs manual reconciliation",
            grant,
            provider,
            provider_transaction_id,
            account_id,
            exc_info=True,
        )
        raise PersistenceFailure() from exc

    logger.info(
        "Credited %s credits to account %s from %s payment %s",
        grant,
        account_id,
        provider,
        provider_transaction_id,
    )
    return SettlementResult(
        transaction_id=entry.id,
        credits_added=grant,
        balance_after=int(balance_after),
    )


def settlement_from_existing(existing: Transaction, account_id: str) -> SettlementResult:
    """Cached result for a replayed settlement of the same provider transaction."""
    if existing.account_id != account_id:
        logger.warning(
            "Payment %s/%s already settled for a different account",
            existing.provider,
            existing.provider_transaction_id,
        )
        raise PaymentNotCompleted("Payment already settled")
    return SettlementResult(
        transaction_id=existing.id,
        credits_added=int(existing.credits or 0),
        balance_after=None,
        already_settled=True,
    )


def build_starting_grant(account_id: str) -> Transaction:
    """Ledger row recording the signup credit grant."""
    return Transaction(
        id=str(uuid.uuid4()),
        account_id=account_id,
        amount=0,
        currency=CREDIT_CURRENCY,
        credits=max(int(settings.STARTING_CREDITS), 0),
        status="completed",
        provider="system",
        provider_transaction_id=f"signup-grant:{account_id}",
        description="Starting credit grant",
    )


async def list_transactions(db: AsyncSession, account_id: str, limit: int = 100) -> List[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.account_id == account_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def serialize_transaction(entry: Transaction) -> dict:
    return {
        "id": entry.id,
        "amount": entry.amount,
        "currency": entry.currency,
        "credits": entry.credits,
        "status": entry.status,
        "provider": entry.provider,
        "provider_transaction_id": entry.provider_transaction_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def find_settlement(
    db: AsyncSession,
    account_id: str,
    *,
    provider: str,
    provider_transaction_id: str,
) -> Optional[SettlementResult]:
    existing = await find_transaction(db, provider=provider, provider_transaction_id=provider_transaction_id)
    if existing is None or existing.status != "completed":
        return None
    return settlement_from_existing(existing, account_id)
