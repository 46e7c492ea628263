"""
GenAI Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    generate,
    generations,
    payments,
    proxy,
)
from services.errors import InsufficientCredits, ServiceError
from services.payment_gateways import PayPalClient, RazorpayClient
from services.providers import GenerationProvider
from services.reconcile import reconcile_stalled_generation_jobs


async def _periodic_generation_reconcile(provider: GenerationProvider) -> None:
    interval_minutes = max(int(settings.GENERATION_RECONCILE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            counts = await reconcile_stalled_generation_jobs(provider)
            if counts.get("checked"):
                print(
                    f"🔁 Generation reconcile tick: checked={counts['checked']} "
                    f"completed={counts['completed']} failed={counts['failed']}"
                )
        except Exception as exc:
            print(f"⚠️ Generation reconcile tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting GenAI Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    Path(settings.GENERATIONS_DIR).mkdir(parents=True, exist_ok=True)

    app.state.generation_provider = GenerationProvider.from_settings()
    app.state.paypal_client = PayPalClient.from_settings()
    app.state.razorpay_client = RazorpayClient.from_settings()

    try:
        counts = await reconcile_stalled_generation_jobs(app.state.generation_provider)
        if counts.get("checked"):
            print(
                f"♻️ Reconciled {counts['checked']} processing generation jobs after startup "
                f"(completed={counts['completed']} failed={counts['failed']})."
            )
    except Exception as exc:
        print(f"⚠️ Generation job recovery skipped: {exc}")

    reconcile_task = None
    if int(settings.GENERATION_RECONCILE_INTERVAL_MINUTES) > 0:
        reconcile_task = asyncio.create_task(_periodic_generation_reconcile(app.state.generation_provider))
        print(
            "📅 Generation reconcile loop enabled "
            f"(every {int(settings.GENERATION_RECONCILE_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass
    await app.state.generation_provider.aclose()
    await app.state.paypal_client.aclose()
    await app.state.razorpay_client.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="GenAI Studio API",
    description="Credit-metered image, video and voice generation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    content = {"error": exc.message, "code": exc.code}
    if isinstance(exc, InsufficientCredits):
        content["required"] = exc.required
        content["available"] = exc.available
    return JSONResponse(status_code=exc.status_code, content=content)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/api/billing", tags=["Billing"])
app.include_router(generate.router, prefix="/api/generate", tags=["Generate"])
app.include_router(generations.router, prefix="/api/generations", tags=["Generations"])
app.include_router(proxy.router, prefix="/api/proxy", tags=["Proxy"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])

app.mount(
    settings.GENERATIONS_URL_PREFIX,
    StaticFiles(directory=settings.GENERATIONS_DIR, check_dir=False),
    name="generations",
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "GenAI Studio API",
        "version": "0.1.0",
        "status": "running"
    }
