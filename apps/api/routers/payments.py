"""Credit top-up endpoints backed by PayPal and Razorpay."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_current_account
from routers.deps import get_paypal_client, get_razorpay_client
from routers.rate_limit import rate_limit
from services import payments
from services.errors import PaymentGatewayError, ServiceError
from services.payment_gateways import PayPalClient, RazorpayClient

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateOrderRequest(BaseModel):
    amount: Any
    currency: Optional[str] = None


class CaptureOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderID")


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    payment_id: str = Field(alias="paymentId")
    signature: str
    amount: Optional[Any] = None


def _settled(result) -> dict:
    return {
        "success": True,
        "creditsAdded": result.credits_added,
        "alreadySettled": result.already_settled,
    }


@router.post("/create-order")
async def create_order(
    request: CreateOrderRequest,
    _rate_limit: None = Depends(rate_limit("payments_create", limit=30, window_seconds=3600)),
    account: AccountContext = Depends(get_current_account),
    paypal: PayPalClient = Depends(get_paypal_client),
    razorpay: RazorpayClient = Depends(get_razorpay_client),
):
    try:
        order_id = await payments.create_order(
            account.id,
            request.amount,
            request.currency,
            paypal=paypal,
            razorpay=razorpay,
        )
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception("Order creation failed for account %s", account.id)
        raise PaymentGatewayError("Failed to create order") from exc
    return {"id": order_id}


@router.post("/capture-order")
async def capture_order(
    request: CaptureOrderRequest,
    _rate_limit: None = Depends(rate_limit("payments_capture", limit=30, window_seconds=3600)),
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    paypal: PayPalClient = Depends(get_paypal_client),
):
    try:
        result = await payments.capture_order(db, account.id, request.order_id, paypal=paypal)
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception("PayPal capture failed for order %s", request.order_id)
        raise PaymentGatewayError() from exc
    return _settled(result)


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    _rate_limit: None = Depends(rate_limit("payments_verify", limit=30, window_seconds=3600)),
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    razorpay: RazorpayClient = Depends(get_razorpay_client),
):
    try:
        result = await payments.verify_and_credit(
            db,
            account.id,
            request.order_id,
            request.payment_id,
            request.signature,
            request.amount,
            razorpay=razorpay,
        )
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception("Razorpay verification failed for payment %s", request.payment_id)
        raise PaymentGatewayError() from exc
    return _settled(result)
