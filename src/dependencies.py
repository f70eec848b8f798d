"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.wearables.pipeline import WithingsPipeline


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from Clerk JWT."""

    clerk_user_id: str  # Clerk subject (e.g. "user_2x...")
    user_id: str  # Internal CareLink user id; falls back to the Clerk subject
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Clerk auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_pipeline(request: Request) -> WithingsPipeline:
    """Return the integration pipeline built by the application lifespan."""
    pipeline: WithingsPipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Integration pipeline not ready")
    return pipeline


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Pipeline = Annotated[WithingsPipeline, Depends(get_pipeline)]
