"""Metered pass-through proxy to the generation provider.

POST requests are priced from the target URL and charged before they are
forwarded. A non-success upstream status refunds the charge; a success is
streamed back untouched and the job is logged once the stream ends.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Set

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker
from services.artifacts import keep_remote_media, record_generation
from services.errors import InvalidInput
from services.generation_queue import enqueue_generation_reconcile
from services.ledger import refund_credits, reserve_credits
from services.model_catalog import ModelSpec, compute_cost, extract_media_urls, resolve_model_for_target_url
from services.providers import GenerationProvider

logger = logging.getLogger(__name__)

TARGET_URL_HEADER = "x-fal-target-url"
MAX_CAPTURE_BYTES = 1_000_000
PASSTHROUGH_REQUEST_HEADERS = {"accept", "content-type", "user-agent"}
DROPPED_RESPONSE_HEADERS = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

_background_tasks: Set[asyncio.Task] = set()


@dataclass
class ProxyCharge:
    job_id: str
    account_id: str
    target_url: str
    cost: int
    spec: Optional[ModelSpec]
    prompt: str

    @property
    def model_id(self) -> str:
        return self.spec.model_id if self.spec else "unknown"

    @property
    def media_type(self) -> str:
        return self.spec.media_type if self.spec else "image"


def spawn_background(coro) -> asyncio.Task:
    """Run ``coro`` without blocking the response, keeping a strong reference."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _json_object(raw: bytes) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def filter_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    forwarded: Dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered == TARGET_URL_HEADER:
            continue
        if lowered in PASSTHROUGH_REQUEST_HEADERS or lowered.startswith("x-fal-"):
            forwarded[lowered] = value
    return forwarded


def filter_response_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {name: value for name, value in headers.items() if name.lower() not in DROPPED_RESPONSE_HEADERS}


async def charge_for_proxy(db: AsyncSession, account_id: str, target_url: str, body: bytes) -> ProxyCharge:
    """Price the proxied call and reserve its cost in one conditional debit."""
    spec = resolve_model_for_target_url(target_url)
    request_input = _json_object(body)
    if spec is None:
        if not settings.PROXY_ALLOW_UNPRICED_MODELS:
            logger.warning("Rejected proxy call to unpriced target %s", target_url)
            raise InvalidInput("Model not available")
        logger.warning("Forwarding unpriced proxy call to %s free of charge", target_url)
        cost = 0
    else:
        cost = compute_cost(spec, request_input)

    prompt = str(request_input.get("prompt") or "").strip()[:1000] or (spec.label if spec else "Generation")
    charge = ProxyCharge(
        job_id=str(uuid.uuid4()),
        account_id=account_id,
        target_url=target_url,
        cost=cost,
        spec=spec,
        prompt=prompt,
    )
    if cost > 0:
        await reserve_credits(db, account_id, cost)
    return charge


async def refund_proxy_charge(db: AsyncSession, charge: ProxyCharge, status_code: int) -> None:
    if charge.cost <= 0:
        return
    logger.error(
        "Provider call for %s failed with %s. Refunding account %s",
        charge.model_id,
        status_code,
        charge.account_id,
    )
    await refund_credits(
        db,
        charge.account_id,
        charge.cost,
        reference=charge.job_id,
        reason=f"refund-fal-{status_code}",
    )


def _sse_last_event(raw: bytes) -> Dict[str, Any]:
    """Return the last JSON ``data:`` event of a server-sent-events body."""
    last: Dict[str, Any] = {}
    for line in raw.decode("utf-8", errors="replace").splitlines():
        if not line.startswith("data:"):
            continue
        event = _json_object(line[5:].strip().encode("utf-8"))
        if event:
            last = event
    return last


def _captured_result(captured: bytes, content_type: str) -> Dict[str, Any]:
    if "text/event-stream" in (content_type or "").lower():
        return _sse_last_event(captured)
    return _json_object(captured)


async def log_proxied_generation(
    charge: ProxyCharge,
    captured: bytes,
    *,
    content_type: str = "",
    provider: Optional[GenerationProvider] = None,
) -> None:
    """Log the generation after a successful stream.

    Only a queued request (one that came back with a request id or status
    URL) is logged as ``processing`` and handed to reconciliation. Anything
    else was delivered to the caller and is logged ``completed``, with the
    result media copied to the artifact store when it can be found.
    """
    body = _captured_result(captured, content_type)
    media_urls = extract_media_urls(body)
    request_id = body.get("request_id")
    status_url = body.get("status_url")
    response_url = body.get("response_url")
    queued = not media_urls and bool(request_id or status_url)
    status = "processing" if queued else "completed"
    if status == "completed" and not media_urls:
        logger.info("Proxied generation %s delivered without a readable result", charge.job_id)

    media_url = None
    if media_urls:
        media_url = await keep_remote_media(provider, media_urls[0], charge.media_type)

    try:
        async with async_session_maker() as db:
            await record_generation(
                db,
                job_id=charge.job_id,
                account_id=charge.account_id,
                model=charge.model_id,
                prompt=charge.prompt,
                cost=charge.cost,
                status=status,
                media_type=charge.media_type,
                media_url=media_url,
                provider_request_id=str(request_id) if request_id else None,
                status_url=str(status_url) if status_url else None,
                response_url=str(response_url) if response_url else None,
            )
    except Exception:
        logger.exception("Failed to log proxied generation %s", charge.job_id)
        return

    if status == "processing":
        try:
            await asyncio.to_thread(enqueue_generation_reconcile, charge.job_id)
        except Exception as exc:
            logger.warning(
                "Reconcile queue unavailable for job %s; periodic sweep will pick it up: %s",
                charge.job_id,
                exc,
            )


async def relay_stream(
    upstream: httpx.Response,
    charge: Optional[ProxyCharge],
    provider: Optional[GenerationProvider] = None,
) -> AsyncIterator[bytes]:
    """Yield the upstream body as it arrives.

    Closing this iterator (client disconnect) closes the upstream connection.
    """
    captured = bytearray()
    overflow = False
    try:
        async for chunk in upstream.aiter_bytes():
            if charge is not None and not overflow:
                if len(captured) + len(chunk) <= MAX_CAPTURE_BYTES:
                    captured.extend(chunk)
                else:
                    overflow = True
            yield chunk
    finally:
        await upstream.aclose()
        if charge is not None:
            spawn_background(
                log_proxied_generation(
                    charge,
                    b"" if overflow else bytes(captured),
                    content_type=upstream.headers.get("content-type", ""),
                    provider=provider,
                )
            )
