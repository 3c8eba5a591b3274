"""
Health check endpoints with database pool and worker monitoring.
"""

import time

from fastapi import APIRouter

from drip_engine.config import settings
from drip_engine.db.pool import db_health_check
from drip_engine.features.lifecycle_campaigns.jobs.campaign_worker import get_campaign_worker

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "drip-engine"}


@router.get("/readyz")
async def readyz():
    """Readiness check covering the database pool, the worker and configuration."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
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

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    worker_health = get_campaign_worker().health_check()
    checks["drip_worker"] = {
        "ok": worker_health["healthy"],
        "campaigns_enabled": worker_health["campaigns_enabled"],
        "last_run_at": worker_health["last_run_at"],
    }
    overall_ok = overall_ok and worker_health["healthy"]

    config_issues = []
    if not settings.email_configured():
        config_issues.append("EMAIL_API_URL or EMAIL_API_KEY not set")
    if not settings.ADMIN_API_TOKEN:
        config_issues.append("ADMIN_API_TOKEN not set")

    # Missing email config is tolerated in development (dry-run transport)
    config_ok = not config_issues or settings.environment == "development"
    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and config_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
