"""Service-level error taxonomy rendered as ``{"error", "code"}`` responses."""

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal Error"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class Unauthorized(ServiceError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class InvalidInput(ServiceError):
    status_code = 400
    code = "INVALID_INPUT"
    default_message = "Invalid input"


class MissingInput(InvalidInput):
    code = "MISSING_INPUT"
    default_message = "Missing required input"


class InvalidAmount(InvalidInput):
    code = "INVALID_AMOUNT"
    default_message = "Invalid amount"


class InsufficientCredits(ServiceError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"
    default_message = "Insufficient coins"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(self.default_message)


class ProviderFailure(ServiceError):
    status_code = 500
    code = "PROVIDER_FAILURE"
    default_message = "Generation failed"


class InvalidSignature(ServiceError):
    status_code = 400
    code = "INVALID_SIGNATURE"
    default_message = "Invalid Signature"


class PaymentNotCompleted(ServiceError):
    status_code = 400
    code = "PAYMENT_NOT_COMPLETED"
    default_message = "Payment not completed"


class PaymentGatewayError(ServiceError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"
    default_message = "Payment failed"


class PersistenceFailure(ServiceError):
    status_code = 500
    code = "PERSISTENCE_FAILURE"
    default_message = "Transaction failed"


class AccountNotFound(Unauthorized):
    code = "ACCOUNT_NOT_FOUND"
    default_message = "Account not found"
