"""
Credits Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    user,
    credits,
    billing,
    webhooks,
    referral,
    admin,
)
from services.errors import CreditsError
from services.payments import build_payment_provider
from services.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)


async def _periodic_rate_limit_sweep() -> None:
    interval_seconds = max(int(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            dropped = rate_limiter.sweep()
            if dropped:
                print(f"🧹 Rate limiter sweep: dropped={dropped} remaining={len(rate_limiter)}")
        except Exception as exc:
            print(f"⚠️ Rate limiter sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credits Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if app.state.payment_provider is None:
        print("💳 Stripe is not configured; checkout and webhooks are disabled.")
    sweep_task = None
    if int(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS) > 0:
        sweep_task = asyncio.create_task(_periodic_rate_limit_sweep())
        print(
            "📅 Rate limiter sweep enabled "
            f"(every {int(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS)} s)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credits Ledger API",
    description="Per-user credit balances, consumption, payments and referrals",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.payment_provider = build_payment_provider()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CreditsError)
async def credits_error_handler(request: Request, exc: CreditsError):
    if exc.status_code >= 500:
        logger.error("credits_error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(user.router, prefix="/user", tags=["User"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(referral.router, prefix="/referral", tags=["Referral"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credits Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
