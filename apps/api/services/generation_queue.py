"""Durable generation reconciliation queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import timedelta

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


GENERATION_QUEUE_NAME = "generation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)


def get_generation_queue() -> Queue:
    """Return the configured generation reconciliation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_generation_reconcile(job_id: str) -> Job:
    """Schedule a status check for a queued provider request."""
    queue = get_generation_queue()
    return queue.enqueue_in(
        timedelta(seconds=max(int(settings.GENERATION_RECONCILE_DELAY_SECONDS), 1)),
        "services.reconcile.reconcile_generation_job_sync",
        job_id,
        job_id=f"reconcile:{job_id}",
        retry=Retry(max=5, interval=[30, 60, 120, 300, 600]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=86400,
    )
