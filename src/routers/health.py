"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("carelink.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check and reports whether the
    Withings client is configured.
    """
    settings = get_settings()
    db_ok = False
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    pipeline = getattr(request.app.state, "pipeline", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "withingsConfigured": bool(
            settings.withings_client_id
            and settings.withings_client_secret
            and settings.withings_redirect_uri
        ),
        "backgroundTasks": len(pipeline.supervisor) if pipeline else 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
