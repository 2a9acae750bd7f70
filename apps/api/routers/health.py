"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings

router = APIRouter()
logger = logging.getLogger(__name__)


async def _database_status() -> str:
    from database import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as exc:
        logger.warning("health_database_down error=%s", exc)
        return f"down: {exc}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
        "stripe": "configured" if settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET else "missing",
    }
    if health_status["database"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if await _database_status() != "up":
        missing.append("database")
    if settings.BILLING_ENABLED and not (settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET):
        missing.append("STRIPE_SECRET_KEY/STRIPE_WEBHOOK_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
