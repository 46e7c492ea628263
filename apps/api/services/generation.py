"""Credit-metered invocation of generation models.

A call reserves credits, runs the provider, stores the output and logs the
job. Any failure after the reservation refunds the same amount before the
error is returned.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker
from services.artifacts import delete_stored_media, persist_remote_media, record_generation
from services.errors import InvalidInput, PersistenceFailure, ProviderFailure, ServiceError
from services.ledger import refund_credits, reserve_credits
from services.model_catalog import ModelSpec, compute_cost, describe_generation, get_model_spec
from services.providers import GenerationProvider

logger = logging.getLogger(__name__)

_detached_compensations: Set[asyncio.Task] = set()


@dataclass
class GenerationResult:
    job_id: str
    model_id: str
    image_url: str
    cost: int
    remaining_credits: int
    media_urls: List[str] = field(default_factory=list)


def prepare_invocation(model_id: Optional[str], ui_input: Mapping[str, Any]):
    """Validate input and price the call before anything is debited."""
    spec = get_model_spec(model_id)
    if spec is None:
        raise InvalidInput("Invalid Model ID")
    payload = spec.adapt(ui_input)
    cost = compute_cost(spec, ui_input)
    if cost <= 0:
        logger.error("Model %s resolved to a zero cost; refusing unmetered generation", spec.model_id)
        raise InvalidInput("Model is not available")
    return spec, payload, cost


async def invoke(
    db: AsyncSession,
    provider: GenerationProvider,
    account_id: str,
    model_id: Optional[str],
    ui_input: Optional[Mapping[str, Any]],
) -> GenerationResult:
    ui_input = ui_input or {}
    spec, payload, cost = prepare_invocation(model_id, ui_input)
    prompt = describe_generation(spec, ui_input)
    job_id = str(uuid.uuid4())

    remaining = await reserve_credits(db, account_id, cost)

    stored: List[str] = []
    try:
        logger.info("Generating with %s for account %s (job %s)", spec.endpoint, account_id, job_id)
        response = await provider.run(spec.endpoint, payload)
        remote_urls = spec.extractor(response)
        if not remote_urls:
            logger.error("Provider %s returned no output media: %s", spec.endpoint, str(response)[:1000])
            raise ProviderFailure("Generation failed: No output image returned")

        for remote_url in remote_urls:
            stored.append(await persist_remote_media(provider, remote_url, spec.media_type))

        await record_generation(
            db,
            job_id=job_id,
            account_id=account_id,
            model=spec.model_id,
            prompt=prompt,
            cost=cost,
            status="completed",
            media_type=spec.media_type,
            media_url=stored[0],
        )
    except asyncio.CancelledError:
        for local_url in stored:
            delete_stored_media(local_url)
        logger.warning("Generation %s was cancelled after its reservation. Refunding.", job_id)
        compensation = asyncio.create_task(
            _compensate_detached(account_id, spec, prompt, cost, job_id, "Generation cancelled", 499)
        )
        _detached_compensations.add(compensation)
        compensation.add_done_callback(_detached_compensations.discard)
        await asyncio.shield(compensation)
        raise
    except Exception as exc:
        for local_url in stored:
            delete_stored_media(local_url)
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        await _compensate(db, account_id, spec, prompt, cost, job_id, message, getattr(exc, "status_code", 500))
        if isinstance(exc, ServiceError):
            raise
        if isinstance(exc, SQLAlchemyError):
            raise PersistenceFailure() from exc
        logger.exception("Generation %s failed unexpectedly", job_id)
        raise ProviderFailure() from exc

    return GenerationResult(
        job_id=job_id,
        model_id=spec.model_id,
        image_url=stored[0],
        cost=cost,
        remaining_credits=remaining,
        media_urls=stored,
    )


async def _compensate(
    db: AsyncSession,
    account_id: str,
    spec: ModelSpec,
    prompt: str,
    cost: int,
    job_id: str,
    message: str,
    status: int,
) -> None:
    logger.warning("Generation %s with %s failed (%s): %s. Refunding.", job_id, spec.model_id, status, message)
    await refund_credits(
        db,
        account_id,
        cost,
        reference=job_id,
        reason=f"{spec.model_id} failed ({status}): {message}",
    )
    try:
        await record_generation(
            db,
            job_id=job_id,
            account_id=account_id,
            model=spec.model_id,
            prompt=prompt,
            cost=cost,
            status="failed",
            media_type=spec.media_type,
            error_message=message,
        )
    except SQLAlchemyError:
        await db.rollback()
        logger.warning("Could not log failed generation %s", job_id, exc_info=True)


async def _compensate_detached(
    account_id: str,
    spec: ModelSpec,
    prompt: str,
    cost: int,
    job_id: str,
    message: str,
    status: int,
) -> None:
    # Runs on its own session: the request's session is torn down with the cancelled request.
    async with async_session_maker() as db:
        await _compensate(db, account_id, spec, prompt, cost, job_id, message, status)
