"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings, unsigned_webhooks_allowed
from database import engine

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except (SQLAlchemyError, OSError) as e:
        return f"down: {str(e)}"


async def _redis_status() -> str:
    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        return "up"
    except (RedisError, OSError) as e:
        return f"down: {str(e)}"


def _webhook_status() -> str:
    if (settings.PAYSTACK_WEBHOOK_SECRET or "").strip():
        return "configured"
    return "unsigned (development)" if unsigned_webhooks_allowed() else "missing"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    The entitlement store is required; Redis only backs request throttling.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": await _redis_status(),
        "webhook_secret": _webhook_status(),
        "image_generation": "configured" if settings.OPENAI_API_KEY else "missing",
    }
    if health_status["database"] != "up" or health_status["redis"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    missing = []
    if await _database_status() != "up":
        missing.append("database")
    if await _redis_status() != "up":
        missing.append("redis")
    if _webhook_status() == "missing":
        missing.append("PAYSTACK_WEBHOOK_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
