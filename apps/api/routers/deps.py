"""Shared HTTP clients stored on ``app.state`` and exposed as dependencies."""

from fastapi import Request

from services.payment_gateways import PayPalClient, RazorpayClient
from services.providers import GenerationProvider


def _state_client(request: Request, name: str, factory):
    client = getattr(request.app.state, name, None)
    if client is None:
        client = factory()
        setattr(request.app.state, name, client)
    return client


def get_generation_provider(request: Request) -> GenerationProvider:
    return _state_client(request, "generation_provider", GenerationProvider.from_settings)


def get_paypal_client(request: Request) -> PayPalClient:
    return _state_client(request, "paypal_client", PayPalClient.from_settings)


def get_razorpay_client(request: Request) -> RazorpayClient:
    return _state_client(request, "razorpay_client", RazorpayClient.from_settings)
