"""Exception handlers translating integration errors into JSON responses.

Every ``IntegrationError`` becomes ``{"error": code, "detail": message, **flags}``
with the error's HTTP status.  Anything unhandled becomes a generic 500 with
no internal detail.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.wearables.errors import IntegrationError

logger = logging.getLogger("carelink.errors")


async def integration_exception_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    logger.warning("%s %s → %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s: %r", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": "An unexpected error occurred"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IntegrationError, integration_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
