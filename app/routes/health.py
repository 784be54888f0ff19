# app/routes/health.py
"""
Health check endpoints.

Only the backends selected in settings are checked for readiness; the
in-memory storage and event backends are always ready.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "progression-engine"}


@router.get("/readyz")
async def readyz():
    """Readiness check for the configured storage and event backends."""
    checks = {}
    overall_ok = True

    if settings.EVENT_BACKEND == "redis":
        t0 = time.time()
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and redis_ok

    if settings.STORAGE_BACKEND == "postgres":
        t0 = time.time()
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"].update(db_health["pool_stats"])
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    checks["configuration"] = {
        "ok": True,
        "environment": settings.environment,
        "storage_backend": settings.STORAGE_BACKEND,
        "event_backend": settings.EVENT_BACKEND,
    }

    body = {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
