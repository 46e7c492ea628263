"""PayPal and Razorpay REST clients."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import httpx

from config import settings
from services.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class PayPalClient:
    """Orders v2 API with client-credentials authentication."""

    def __init__(
        self,
        api_url: str,
        client_id: str,
        client_secret: str,
        *,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or "").rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "PayPalClient":
        return cls(
            settings.PAYPAL_API_URL,
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_CLIENT_SECRET,
            timeout_seconds=settings.PAYMENT_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _access_token(self) -> str:
        if not self.api_url or not self.client_id or not self.client_secret:
            raise PaymentGatewayError("PayPal is not configured.", status_code=503)
        try:
            response = await self._client.post(
                f"{self.api_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError() from exc
        token = _json_or_empty(response).get("access_token")
        if response.status_code >= 400 or not token:
            logger.error("PayPal token request failed with %s", response.status_code)
            raise PaymentGatewayError()
        return str(token)

    async def create_order(self, amount: Decimal, currency: str = "USD") -> str:
        token = await self._access_token()
        try:
            response = await self._client.post(
                f"{self.api_url}/v2/checkout/orders",
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "intent": "CAPTURE",
                    "purchase_units": [
                        {
                            "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
                            "description": "Purchase of generation credits",
                        }
                    ],
                },
            )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError("Failed to create order") from exc
        order_id = _json_or_empty(response).get("id")
        if response.status_code >= 400 or not order_id:
            logger.error("PayPal create order failed with %s", response.status_code)
            raise PaymentGatewayError("Failed to create order")
        return str(order_id)

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """Capture an approved order; returns PayPal's body even on a 4xx."""
        token = await self._access_token()
        try:
            response = await self._client.post(
                f"{self.api_url}/v2/checkout/orders/{order_id}/capture",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError() from exc
        if response.status_code >= 500:
            logger.error("PayPal capture for %s failed with %s", order_id, response.status_code)
            raise PaymentGatewayError()
        return _json_or_empty(response)


class RazorpayClient:
    """Razorpay orders/payments API with HTTP basic authentication."""

    def __init__(
        self,
        api_url: str,
        key_id: str,
        key_secret: str,
        *,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or "").rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "RazorpayClient":
        return cls(
            settings.RAZORPAY_API_URL,
            settings.RAZORPAY_KEY_ID,
            settings.RAZORPAY_KEY_SECRET,
            timeout_seconds=settings.PAYMENT_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _require_configured(self) -> None:
        if not self.key_id or not self.key_secret:
            raise PaymentGatewayError("Razorpay is not configured.", status_code=503)

    def signature_matches(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the checkout signature: HMAC-SHA256 of ``order_id|payment_id``."""
        self._require_configured()
        expected = hmac.new(
            self.key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, str(signature or ""))

    async def create_order(self, amount: Decimal, currency: str = "INR") -> str:
        self._require_configured()
        minor_units = int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))
        try:
            response = await self._client.post(
                f"{self.api_url}/v1/orders",
                auth=(self.key_id, self.key_secret),
                json={
                    "amount": minor_units,
                    "currency": currency,
                    "receipt": f"receipt_{int(time.time() * 1000)}",
                },
            )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError("Failed to create order") from exc
        order_id = _json_or_empty(response).get("id")
        if response.status_code >= 400 or not order_id:
            logger.error("Razorpay create order failed with %s", response.status_code)
            raise PaymentGatewayError("Failed to create order")
        return str(order_id)

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        self._require_configured()
        try:
            response = await self._client.get(
                f"{self.api_url}/v1/payments/{payment_id}",
                auth=(self.key_id, self.key_secret),
            )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError("Verification failed") from exc
        if response.status_code >= 400:
            logger.error("Razorpay payment fetch for %s failed with %s", payment_id, response.status_code)
            raise PaymentGatewayError("Verification failed")
        return _json_or_empty(response)

    async def capture_payment(self, payment_id: str, amount_minor: int, currency: str) -> Dict[str, Any]:
        self._require_configured()
        try:
            response = await self._client.post(
                f"{self.api_url}/v1/payments/{payment_id}/capture",
                auth=(self.key_id, self.key_secret),
                json={"amount": int(amount_minor), "currency": currency},
            )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError("Verification failed") from exc
        if response.status_code >= 400:
            logger.error("Razorpay capture for %s failed with %s", payment_id, response.status_code)
            raise PaymentGatewayError("Verification failed")
        return _json_or_empty(response)
