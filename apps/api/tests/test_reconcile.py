from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
import models  # noqa: F401
from models.account import Account
from models.generation_job import GenerationJob
from models.transaction import Transaction
from services.providers import GenerationProvider
from services.reconcile import reconcile_generation_job, reconcile_stalled_generation_jobs


ACCOUNT_ID = "reconcile-account"
STATUS_URL = "https://queue.fal.run/fal-ai/flux/requests/{id}/status"
RESPONSE_URL = "https://queue.fal.run/fal-ai/flux/requests/{id}"


class _FakeQueue:
    def __init__(self):
        self.statuses = {}
        self.results = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host.endswith("fal.media"):
            if "expired" in request.url.path:
                return httpx.Response(404)
            return httpx.Response(200, content=b"\x89PNG-bytes", headers={"content-type": "image/png"})
        parts = request.url.path.rstrip("/").split("/")
        if parts[-1] == "status":
            status = self.statuses.get(parts[-2])
            if status is None:
                return httpx.Response(404, json={"detail": "Request not found"})
            return httpx.Response(200, json={"status": status})
        result = self.results.get(parts[-1])
        if result is None:
            return httpx.Response(500, json={"detail": "result missing"})
        return httpx.Response(200, json=result)


@pytest_asyncio.fixture
async def reconcile_env(tmp_path):
    db_path = tmp_path / "reconcile.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as db:
        db.add(Account(id=ACCOUNT_ID, email="reconcile@example.com", credits=3))
        await db.commit()

    queue = _FakeQueue()
    provider = GenerationProvider("test-key", transport=httpx.MockTransport(queue.handler))
    with (
        patch("services.reconcile.async_session_maker", session_maker),
        patch("services.artifacts.settings.GENERATIONS_DIR", str(tmp_path / "generations")),
    ):
        yield session_maker, queue, provider

    await provider.aclose()
    await engine.dispose()


async def _add_job(session_maker, request_id: str, *, created_at=None) -> str:
    job = GenerationJob(
        id=f"job-{request_id}",
        account_id=ACCOUNT_ID,
        media_type="image",
        prompt="a lighthouse",
        model="fal-ai/flux/dev",
        cost=7,
        status="processing",
        provider_request_id=request_id,
        status_url=STATUS_URL.format(id=request_id),
        response_url=RESPONSE_URL.format(id=request_id),
        created_at=created_at or datetime.now(timezone.utc),
    )
    async with session_maker() as db:
        db.add(job)
        await db.commit()
    return job.id


async def _job(session_maker, job_id: str) -> GenerationJob:
    async with session_maker() as db:
        result = await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))
        return result.scalar_one()


async def _balance(session_maker) -> int:
    async with session_maker() as db:
        result = await db.execute(select(Account.credits).where(Account.id == ACCOUNT_ID))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_completed_request_stores_result(reconcile_env):
    session_maker, queue, provider = reconcile_env
    job_id = await _add_job(session_maker, "req-1")
    queue.statuses["req-1"] = "COMPLETED"
    queue.results["req-1"] = {"images": [{"url": "https://v3.fal.media/files/lighthouse.png"}]}

    status = await reconcile_generation_job(job_id, provider=provider)

    assert status == "completed"
    job = await _job(session_maker, job_id)
    assert job.status == "completed"
    assert job.media_url.startswith("/generations/")
    assert job.completed_at is not None
    assert await _balance(session_maker) == 3


@pytest.mark.asyncio
async def test_lost_request_fails_and_refunds(reconcile_env):
    session_maker, _, provider = reconcile_env
    job_id = await _add_job(session_maker, "req-gone")

    status = await reconcile_generation_job(job_id, provider=provider)

    assert status == "failed"
    job = await _job(session_maker, job_id)
    assert job.error_message == "Provider request not found"
    assert await _balance(session_maker) == 3 + 7

    async with session_maker() as db:
        result = await db.execute(select(Transaction))
        refunds = list(result.scalars().all())
    assert [(row.status, row.credits, row.provider_transaction_id) for row in refunds] == [
        ("refund", 7, f"refund:{job_id}")
    ]

    # a second pass leaves the terminal job and the balance alone
    assert await reconcile_generation_job(job_id, provider=provider) == "failed"
    assert await _balance(session_maker) == 3 + 7


@pytest.mark.asyncio
async def test_running_request_stays_processing_until_stale(reconcile_env):
    session_maker, queue, provider = reconcile_env
    created = datetime.now(timezone.utc)
    job_id = await _add_job(session_maker, "req-slow", created_at=created)
    queue.statuses["req-slow"] = "IN_PROGRESS"

    assert await reconcile_generation_job(job_id, provider=provider, now=created + timedelta(minutes=1)) == "processing"
    assert await _balance(session_maker) == 3

    late = created + timedelta(hours=3)
    assert await reconcile_generation_job(job_id, provider=provider, now=late) == "failed"
    job = await _job(session_maker, job_id)
    assert job.error_message == "Generation did not finish in time"
    assert await _balance(session_maker) == 3 + 7


@pytest.mark.asyncio
async def test_sweep_counts_outcomes(reconcile_env):
    session_maker, queue, provider = reconcile_env
    await _add_job(session_maker, "req-a")
    await _add_job(session_maker, "req-b")
    await _add_job(session_maker, "req-c")
    queue.statuses["req-a"] = "COMPLETED"
    queue.results["req-a"] = {"image": {"url": "https://v3.fal.media/files/a.png"}}
    queue.statuses["req-b"] = "IN_QUEUE"

    counts = await reconcile_stalled_generation_jobs(provider)

    assert counts == {"checked": 3, "completed": 1, "failed": 1, "processing": 1}


@pytest.mark.asyncio
async def test_request_id_alone_is_enough_to_poll(reconcile_env):
    session_maker, queue, provider = reconcile_env
    async with session_maker() as db:
        db.add(
            GenerationJob(
                id="job-bare",
                account_id=ACCOUNT_ID,
                media_type="image",
                prompt="a lighthouse",
                model="fal-ai/flux/dev",
                cost=7,
                status="processing",
                provider_request_id="req-bare",
            )
        )
        await db.commit()
    queue.statuses["req-bare"] = "COMPLETED"
    queue.results["req-bare"] = {"images": [{"url": "https://v3.fal.media/files/bare.png"}]}

    assert await reconcile_generation_job("job-bare", provider=provider) == "completed"
    job = await _job(session_maker, "job-bare")
    assert job.media_url.startswith("/generations/")


@pytest.mark.asyncio
async def test_expired_provider_media_keeps_remote_url(reconcile_env):
    session_maker, queue, provider = reconcile_env
    job_id = await _add_job(session_maker, "req-expired")
    queue.statuses["req-expired"] = "COMPLETED"
    queue.results["req-expired"] = {"images": [{"url": "https://v3.fal.media/files/expired.png"}]}

    assert await reconcile_generation_job(job_id, provider=provider) == "completed"
    job = await _job(session_maker, job_id)
    assert job.media_url == "https://v3.fal.media/files/expired.png"
    assert await _balance(session_maker) == 3
