# booking_engine/routes/health.py
"""
Health check endpoints with database pool and Redis monitoring.
"""

import time

from fastapi import APIRouter, Request

from booking_engine.services.infrastructure.encryption_service import validate_encryption_config

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "booking-engine"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check across Redis, the database pool and configuration.
    """
    container = request.app.state.container
    checks = {}
    overall_ok = True

    # 1) Redis health check
    t0 = time.time()
    redis_ok = await container.redis.ping()
    checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.time() - t0) * 1000, 1)}
    overall_ok = overall_ok and redis_ok

    # 2) Database pool health check
    t0 = time.time()
    db_health = await container.db.health_check()
    is_healthy = db_health.get("healthy", False)
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"]["pool_stats"] = db_health["pool_stats"]
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 3) Configuration checks
    settings = container.settings
    config_issues = []

    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        config_issues.append("Google OAuth client not configured")
    if not validate_encryption_config():
        config_issues.append("ENCRYPTION_KEY missing or invalid")
    if not settings.INTERNAL_API_KEY:
        config_issues.append("INTERNAL_API_KEY not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
