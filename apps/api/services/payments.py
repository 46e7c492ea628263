"""Payment settlement: turn a verified gateway payment into credits exactly once."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.errors import InvalidAmount, InvalidSignature, PaymentNotCompleted
from services.ledger import SettlementResult, credit_purchase, find_settlement
from services.payment_gateways import PayPalClient, RazorpayClient

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("USD", "INR")
CURRENCY_SYMBOLS = {"USD": "$", "INR": "₹"}


def _rate(currency: str) -> Decimal:
    if currency == "USD":
        return Decimal(str(settings.CREDITS_PER_USD))
    if currency == "INR":
        return Decimal(str(settings.CREDITS_PER_INR))
    raise InvalidAmount(f"Unsupported currency: {currency}")


def _minimum(currency: str) -> Decimal:
    if currency == "USD":
        return Decimal(str(settings.MIN_TOPUP_USD))
    return Decimal(str(settings.MIN_TOPUP_INR))


def normalize_currency(currency: Optional[str]) -> str:
    code = str(currency or "USD").strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise InvalidAmount(f"Unsupported currency: {code}")
    return code


def parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount("Invalid amount")
    if not amount.is_finite():
        raise InvalidAmount("Invalid amount")
    return amount


def compute_credits(amount: Any, currency: str) -> int:
    """``floor(amount * rate)`` in decimal arithmetic, so "20.00" USD is exactly 1000."""
    credits = (parse_amount(amount) * _rate(normalize_currency(currency))).to_integral_value(rounding=ROUND_FLOOR)
    return max(int(credits), 0)


def validate_amount(amount: Any, currency: str) -> Decimal:
    value = parse_amount(amount)
    code = normalize_currency(currency)
    minimum = _minimum(code)
    if value < minimum:
        raise InvalidAmount(f"Invalid amount. Minimum is {CURRENCY_SYMBOLS[code]}{minimum.normalize():f}.")
    return value


async def create_order(
    account_id: str,
    amount: Any,
    currency: Optional[str],
    *,
    paypal: PayPalClient,
    razorpay: RazorpayClient,
) -> str:
    """Validate the top-up amount and open an order with the matching gateway."""
    code = normalize_currency(currency)
    value = validate_amount(amount, code)
    if code == "INR":
        order_id = await razorpay.create_order(value, code)
    else:
        order_id = await paypal.create_order(value, code)
    logger.info("Created %s order %s for account %s (%s %s)", code, order_id, account_id, value, code)
    return order_id


def _first_capture(body: Dict[str, Any]) -> Dict[str, Any]:
    for unit in body.get("purchase_units") or []:
        captures = ((unit or {}).get("payments") or {}).get("captures") or []
        if captures:
            return captures[0] or {}
    return {}


async def capture_order(
    db: AsyncSession,
    account_id: str,
    order_id: str,
    *,
    paypal: PayPalClient,
) -> SettlementResult:
    """Capture a PayPal order and credit the account.

    The order id is the idempotency key: a replayed capture returns the
    original settlement without touching the gateway again.
    """
    order_id = str(order_id or "").strip()
    if not order_id:
        raise InvalidAmount("Missing order ID")

    cached = await find_settlement(db, account_id, provider="paypal", provider_transaction_id=order_id)
    if cached is not None:
        logger.info("PayPal order %s already settled; returning cached result", order_id)
        return cached

    body = await paypal.capture_order(order_id)
    status = str(body.get("status") or "").upper()
    if status != "COMPLETED":
        logger.warning("PayPal order %s capture status %s", order_id, status or "unknown")
        raise PaymentNotCompleted()

    capture = _first_capture(body)
    paid = capture.get("amount") or {}
    value = paid.get("value")
    currency = str(paid.get("currency_code") or "USD").upper()
    if value is None:
        logger.error("PayPal order %s completed without a capture amount", order_id)
        raise PaymentNotCompleted()

    credits = compute_credits(value, currency)
    return await credit_purchase(
        db,
        account_id,
        credits=credits,
        amount=float(parse_amount(value)),
        currency=currency,
        provider="paypal",
        provider_transaction_id=order_id,
        description=f"PayPal capture {capture.get('id') or order_id}",
    )


async def verify_and_credit(
    db: AsyncSession,
    account_id: str,
    order_id: str,
    payment_id: str,
    signature: str,
    claimed_amount: Any = None,
    *,
    razorpay: RazorpayClient,
) -> SettlementResult:
    """Verify a Razorpay checkout and credit the gateway's captured amount."""
    order_id = str(order_id or "").strip()
    payment_id = str(payment_id or "").strip()
    if not order_id or not payment_id or not signature:
        raise InvalidSignature()
    if not razorpay.signature_matches(order_id, payment_id, signature):
        logger.warning("Rejected Razorpay payment %s with a bad signature", payment_id)
        raise InvalidSignature()

    cached = await find_settlement(db, account_id, provider="razorpay", provider_transaction_id=payment_id)
    if cached is not None:
        logger.info("Razorpay payment %s already settled; returning cached result", payment_id)
        return cached

    payment = await razorpay.fetch_payment(payment_id)
    if payment.get("order_id") != order_id:
        logger.warning("Razorpay payment %s does not belong to order %s", payment_id, order_id)
        raise PaymentNotCompleted()

    amount_minor = int(payment.get("amount") or 0)
    currency = str(payment.get("currency") or "INR").upper()
    status = str(payment.get("status") or "").lower()
    if status == "authorized":
        payment = await razorpay.capture_payment(payment_id, amount_minor, currency)
        status = str(payment.get("status") or "").lower()
    if status != "captured":
        logger.warning("Razorpay payment %s status %s", payment_id, status or "unknown")
        raise PaymentNotCompleted()

    paid = Decimal(amount_minor) / Decimal(100)
    if claimed_amount is not None:
        try:
            claimed = parse_amount(claimed_amount)
        except InvalidAmount:
            claimed = None
        if claimed != paid:
            logger.warning(
                "Razorpay payment %s claimed amount %s differs from captured %s; crediting captured",
                payment_id,
                claimed_amount,
                paid,
            )

    return await credit_purchase(
        db,
        account_id,
        credits=compute_credits(paid, currency),
        amount=float(paid),
        currency=currency,
        provider="razorpay",
        provider_transaction_id=payment_id,
        description=f"Razorpay order {order_id}",
    )
