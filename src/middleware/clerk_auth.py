"""Clerk JWT verification middleware.

Patient-facing routes require ``Authorization: Bearer <Clerk session JWT>``;
a verified token becomes ``request.state.auth`` for ``get_current_user``.

Health, docs and the Withings webhook are never authenticated.  The OAuth
callback is optional: Withings redirects the browser there without our
bearer token, but one that is present is verified so the callback can reject
a state minted for a different patient.  Every other path answers 401
without a valid token.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jwt import PyJWKClient
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import AuthContext

logger = logging.getLogger("carelink.auth")

PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/integrations/withings/webhook",
}

OPTIONAL_AUTH_PATHS: set[str] = {"/integrations/withings/callback"}


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


def _unauthorized(detail: str) -> Response:
    return JSONResponse(status_code=401, content={"error": "unauthorized", "detail": detail})


class ClerkAuthMiddleware(BaseHTTPMiddleware):
    """Verify Clerk-issued JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()
        self._jwks_client = PyJWKClient(
            self._settings.clerk_jwks_url,
            cache_keys=True,
            lifespan=3600,
        )

    def _verify(self, token: str) -> AuthContext:
        """Decode and verify a session token.

        Raises:
            jwt.PyJWTError: Bad signature, unknown key, expired, or issued for an
                origin not in ``cors_origins``.
        """
        signing_key = self._jwks_client.get_signing_key_from_jwt(token)
        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={"verify_aud": False},  # Clerk tokens use azp, not aud
        )
        azp = payload.get("azp")
        if azp and azp not in self._settings.cors_origins:
            raise pyjwt.InvalidTokenError(f"Unexpected authorized party {azp!r}")

        clerk_user_id: str = payload.get("sub", "")
        # Custom claim set via the Clerk session token template
        user_id = payload.get("carelink_user_id") or clerk_user_id
        return AuthContext(
            clerk_user_id=clerk_user_id,
            user_id=str(user_id),
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        # OPTIONS requests pass through (CORS preflight)
        if _is_public(path) or request.method == "OPTIONS":
            return await call_next(request)

        optional = path in OPTIONAL_AUTH_PATHS
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            if optional:
                return await call_next(request)
            return _unauthorized("Missing or invalid Authorization header")

        token = auth_header.removeprefix("Bearer ").strip()
        try:
            request.state.auth = self._verify(token)
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.PyJWTError as exc:
            logger.warning("JWT validation failed on %s: %s", path, exc)
            return _unauthorized("Invalid token")

        return await call_next(request)
