from unittest.mock import patch

import pytest
import redis.asyncio as redis
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from routers import rate_limit as rate_limit_module
from routers.rate_limit import rate_limit
from services.session_token import create_session_token


async def _redis_down(*args, **kwargs):
    raise redis.ConnectionError("connection refused")


def _limited_app() -> FastAPI:
    limited = FastAPI()

    @limited.post("/charge")
    async def charge(_rate_limit: None = Depends(rate_limit("charge", limit=2, window_seconds=60))):
        return {"ok": True}

    return limited


@pytest.mark.asyncio
async def test_local_quota_used_when_redis_is_down():
    limited = _limited_app()
    with patch.object(rate_limit_module, "_consume_redis_quota", _redis_down):
        async with AsyncClient(transport=ASGITransport(app=limited), base_url="http://test") as client:
            statuses = [(await client.post("/charge")).status_code for _ in range(3)]
            blocked = await client.post("/charge")

    assert statuses == [200, 200, 429]
    assert blocked.json()["detail"] == "Rate limit exceeded for charge. Try again later."
    assert int(blocked.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_quota_is_counted_per_account():
    limited = _limited_app()
    first = {"Authorization": f"Bearer {create_session_token('acct-a')['token']}"}
    second = {"Authorization": f"Bearer {create_session_token('acct-b')['token']}"}
    with patch.object(rate_limit_module, "_consume_redis_quota", _redis_down):
        async with AsyncClient(transport=ASGITransport(app=limited), base_url="http://test") as client:
            for _ in range(2):
                assert (await client.post("/charge", headers=first)).status_code == 200
            assert (await client.post("/charge", headers=first)).status_code == 429
            assert (await client.post("/charge", headers=second)).status_code == 200

    assert "genai:rate:charge:account:acct-a" in rate_limit_module._local_counters
