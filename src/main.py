"""CareLink API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.middleware.clerk_auth import ClerkAuthMiddleware
from src.middleware.errors import register_exception_handlers
from src.middleware.rate_limit import RateLimitMiddleware
from src.middleware.security import SecurityHeadersMiddleware
from src.routers import health, webhooks, withings
from src.services.database import close_pool, init_pool
from src.wearables.pipeline import build_pipeline

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("carelink")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting CareLink API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    await init_pool(settings)
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    pipeline = build_pipeline(settings, http_client)
    app.state.pipeline = pipeline

    if settings.poll_interval_seconds > 0:
        pipeline.supervisor.spawn(
            pipeline.scheduler.run_forever(), name="withings-poller", long_running=True
        )

    yield

    # in-flight webhook syncs finish (or are cancelled) before their pool goes away
    await pipeline.supervisor.shutdown(timeout=settings.shutdown_drain_seconds)
    await http_client.aclose()
    await close_pool()
    logger.info("CareLink API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="CareLink API",
        description=(
            "Telemedicine vitals integration: Withings device linking, "
            "webhook and scheduled measurement ingestion, and live vitals."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # ---------- Middleware ----------
    # Starlette wraps in reverse: the last one added runs first.  Request path:
    # CORS → security headers → Clerk auth → rate limit (keyed on the user) → route

    app.add_middleware(RateLimitMiddleware, settings=settings)
    app.add_middleware(ClerkAuthMiddleware, settings=settings)
    # outside auth so 401 and 429 answers carry the headers and request id too
    app.add_middleware(SecurityHeadersMiddleware)
    # outermost so preflight never reaches auth
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After", "X-Request-ID"],
    )

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- Withings (paths registered with the provider, no version prefix) ----------
    app.include_router(withings.router)
    app.include_router(webhooks.router)

    return app


app = create_app()
