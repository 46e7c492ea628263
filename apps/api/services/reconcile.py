"""Move proxied generation jobs from ``processing`` to a terminal state."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generation_job import GenerationJob
from services.artifacts import keep_remote_media
from services.errors import ProviderFailure
from services.ledger import refund_credits
from services.model_catalog import extract_media_urls
from services.providers import GenerationProvider

logger = logging.getLogger(__name__)


class GenerationStillRunning(RuntimeError):
    """Raised to RQ so the reconcile job is retried later."""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _provider_error(body: Optional[dict], fallback: str) -> str:
    if isinstance(body, dict):
        detail = body.get("error") or body.get("detail") or body.get("message")
        if detail:
            return str(detail)[:500]
    return fallback


async def _poll(provider: GenerationProvider, job: GenerationJob) -> Tuple[str, Optional[List[str]], Optional[str]]:
    """Return ``(outcome, media_urls, error)`` where outcome is running/completed/failed."""
    status_url, response_url = job.status_url, job.response_url
    if not status_url and job.provider_request_id:
        status_url, response_url = provider.queue_urls(job.model, job.provider_request_id)
    if not status_url:
        return "running", None, None

    code, body = await provider.get_json(status_url)
    if code == 404:
        return "failed", None, "Provider request not found"
    if code >= 400 or body is None:
        return "running", None, None

    status = str(body.get("status") or "").upper()
    if status != "COMPLETED":
        return "running", None, None
    if body.get("error"):
        return "failed", None, _provider_error(body, "Generation failed")

    result_url = response_url or body.get("response_url")
    if not result_url:
        return "completed", [], None
    code, result = await provider.get_json(result_url)
    if code >= 400:
        return "failed", None, _provider_error(result, f"Provider returned HTTP {code}")
    return "completed", extract_media_urls(result or {}), None


async def reconcile_generation_job(
    job_id: str,
    *,
    provider: Optional[GenerationProvider] = None,
    now: Optional[datetime] = None,
) -> str:
    """Check one processing job against the provider and return its status."""
    owns_provider = provider is None
    provider = provider or GenerationProvider.from_settings()
    current = now or datetime.now(timezone.utc)
    stale_after = timedelta(minutes=max(int(settings.GENERATION_JOB_STALE_MINUTES), 1))
    try:
        async with async_session_maker() as db:
            result = await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))
            job = result.scalar_one_or_none()
            if not job:
                logger.warning("Generation job %s not found", job_id)
                return "missing"
            if job.status != "processing":
                return job.status

            try:
                outcome, media_urls, error = await _poll(provider, job)
            except ProviderFailure as exc:
                logger.warning("Status check for generation job %s failed: %s", job_id, exc.message)
                outcome, media_urls, error = "running", None, None

            created_at = _as_utc(job.created_at)
            if outcome == "running" and created_at and current - created_at > stale_after:
                outcome, error = "failed", "Generation did not finish in time"

            final_status = job.status
            if outcome == "completed":
                job.status = final_status = "completed"
                if media_urls:
                    job.media_url = await keep_remote_media(provider, media_urls[0], job.media_type)
                job.completed_at = current
                await db.commit()
                logger.info("Generation job %s completed", job_id)
            elif outcome == "failed":
                job.status = final_status = "failed"
                job.error_message = (error or "Generation failed")[:1000]
                job.completed_at = current
                account_id, cost, model, message = job.account_id, job.cost, job.model, job.error_message
                await db.commit()
                logger.warning("Generation job %s failed: %s. Refunding.", job_id, message)
                await refund_credits(
                    db,
                    account_id,
                    cost,
                    reference=job_id,
                    reason=f"{model} failed: {message}",
                )
            return final_status
    finally:
        if owns_provider:
            await provider.aclose()


async def reconcile_stalled_generation_jobs(provider: Optional[GenerationProvider] = None) -> Dict[str, int]:
    """Sweep every processing job; used at startup and by the periodic loop."""
    async with async_session_maker() as db:
        result = await db.execute(select(GenerationJob.id).where(GenerationJob.status == "processing"))
        job_ids = list(result.scalars().all())

    counts: Dict[str, int] = {"checked": len(job_ids), "completed": 0, "failed": 0, "processing": 0}
    if not job_ids:
        return counts

    owns_provider = provider is None
    provider = provider or GenerationProvider.from_settings()
    try:
        for job_id in job_ids:
            status = await reconcile_generation_job(job_id, provider=provider)
            if status in counts:
                counts[status] += 1
    finally:
        if owns_provider:
            await provider.aclose()
    return counts


def reconcile_generation_job_sync(job_id: str) -> str:
    """RQ worker entrypoint; raises while the provider is still working so RQ retries."""
    status = asyncio.run(reconcile_generation_job(job_id))
    if status == "processing":
        raise GenerationStillRunning(f"Generation job {job_id} is still processing")
    return status
