"""Health check endpoints."""

import asyncio
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_payment_providers, require_cron_secret
from core.interfaces.payments import PaymentProvider
from infrastructure.config import get_settings
from infrastructure.database import get_db
from services.task_queue import dispatcher

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    """Health check with database connectivity."""
    try:
        result = await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=5.0)
        result.scalar()
        db_status = "connected"
    except TimeoutError:
        logger.error("Health check DB timeout")
        db_status = "error: database timeout"
    except Exception as e:
        logger.error("Health check DB error: %s", str(e))
        db_status = "error: database check failed"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "database": db_status,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/health/redis")
async def health_redis():
    """Check Redis connectivity (rate limiter storage)."""
    if not settings.redis_url:
        return {"status": "disabled", "service": "redis"}
    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.redis_url)
        await asyncio.wait_for(r.ping(), timeout=3.0)
        await r.aclose()
        return {"status": "healthy", "service": "redis"}
    except TimeoutError:
        raise HTTPException(status_code=503, detail="Redis timeout")
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Redis unavailable: {str(e)}")


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Kubernetes-style readiness probe."""
    db_ok = False
    try:
        await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=5.0)
        db_ok = True
    except Exception as e:
        logger.warning("Readiness DB check failed: %s", e)

    return {
        "ready": db_ok,
        "database": "ok" if db_ok else "unavailable",
    }


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}


@router.get("/health/services", dependencies=[Depends(require_cron_secret)])
async def services_check(
    providers: dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    """Which payment providers have credentials, plus background task counters."""
    services = {
        name: {"configured": provider.is_configured}
        for name, provider in providers.items()
    }
    services["email"] = {"configured": bool(settings.resend_api_key)}
    services["analytics"] = {"configured": bool(settings.amplitude_api_key)}

    all_configured = all(services[name]["configured"] for name in providers)

    return {
        "status": "healthy" if all_configured else "degraded",
        "services": services,
        "background_tasks": dispatcher.stats(),
        "timestamp": datetime.now(UTC).isoformat(),
    }
