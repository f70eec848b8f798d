"""Response hardening and request correlation.

Every response carries the baseline security headers and an ``X-Request-ID``
(echoed from the caller when it sent one).  The OAuth callback additionally
gets ``Referrer-Policy: no-referrer`` so the one-time ``code`` in its URL never
leaks to the patient app through the Referer header.
"""

from __future__ import annotations

import logging
import re
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger("carelink.security")

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",  # responses carry patient vitals
}

# Paths whose URL holds an authorization code
NO_REFERRER_PATHS: set[str] = {"/integrations/withings/callback"}

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


def _request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID_RE.match(incoming):
        return incoming
    return uuid.uuid4().hex


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id

        response = await call_next(request)

        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        if request.url.path in NO_REFERRER_PATHS:
            response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["X-Request-ID"] = request_id

        if response.status_code >= 500:
            logger.warning(
                "%s %s → %d [request_id=%s]",
                request.method,
                request.url.path,
                response.status_code,
                request_id,
            )
        return response
