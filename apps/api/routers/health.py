"""
Health check endpoints.
"""

from typing import Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _gateway_status() -> Dict[str, str]:
    def configured(*values: str) -> str:
        return "configured" if all(values) else "missing"

    return {
        "fal": configured(settings.FAL_KEY),
        "paypal": configured(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
        "razorpay": configured(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET),
    }


@router.get("/health")
async def health_check():
    """
    Overall service health: database, Redis, and which upstream gateways
    have credentials.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "gateways": _gateway_status(),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once generation calls can be served; payments are optional."""
    missing: List[str] = []
    if not settings.FAL_KEY:
        missing.append("FAL_KEY")
    if not settings.GENERATIONS_DIR:
        missing.append("GENERATIONS_DIR")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
