"""Metered pass-through proxy for client-side provider SDK calls."""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AccountContext, get_current_account
from routers.deps import get_generation_provider
from routers.rate_limit import rate_limit
from services.errors import InvalidInput, ServiceError
from services.providers import GenerationProvider
from services.proxy import (
    TARGET_URL_HEADER,
    charge_for_proxy,
    filter_request_headers,
    filter_response_headers,
    refund_proxy_charge,
    relay_stream,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _target_url(request: Request, provider: GenerationProvider) -> str:
    target_url = (request.headers.get(TARGET_URL_HEADER) or "").strip()
    if not target_url:
        raise InvalidInput(f"Missing {TARGET_URL_HEADER} header")
    if not provider.is_allowed_target(target_url):
        logger.warning("Rejected proxy target %s", target_url)
        raise InvalidInput("Invalid target URL")
    return target_url


@router.post("")
async def proxy_post(
    request: Request,
    _rate_limit: None = Depends(rate_limit("proxy", limit=120, window_seconds=60)),
    account: AccountContext = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    """Charge for the targeted model, then forward the call."""
    target_url = _target_url(request, provider)
    body = await request.body()
    charge = await charge_for_proxy(db, account.id, target_url, body)

    try:
        upstream = await provider.open_stream(
            "POST",
            target_url,
            headers=filter_request_headers(request.headers),
            content=body,
        )
    except ServiceError as exc:
        await refund_proxy_charge(db, charge, exc.status_code)
        raise

    if upstream.status_code >= 400:
        content = b""
        try:
            await refund_proxy_charge(db, charge, upstream.status_code)
            content = await upstream.aread()
        except httpx.HTTPError as exc:
            logger.warning("Could not read provider error body for %s: %s", target_url, exc)
        finally:
            await upstream.aclose()
        return Response(
            content=content,
            status_code=upstream.status_code,
            headers=filter_response_headers(upstream.headers),
        )

    return StreamingResponse(
        relay_stream(upstream, charge, provider),
        status_code=upstream.status_code,
        headers=filter_response_headers(upstream.headers),
    )


@router.get("")
async def proxy_get(
    request: Request,
    _account: AccountContext = Depends(get_current_account),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    """Forward status and result polling; never charged."""
    target_url = _target_url(request, provider)
    upstream = await provider.open_stream("GET", target_url, headers=filter_request_headers(request.headers))
    return StreamingResponse(
        relay_stream(upstream, None),
        status_code=upstream.status_code,
        headers=filter_response_headers(upstream.headers),
    )
