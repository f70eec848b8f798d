"""Withings notification webhook.

Withings POSTs ``userid``, ``appli``, ``startdate`` and ``enddate`` (form
encoded, occasionally JSON) whenever a device uploads new data, and probes
the URL with HEAD when a subscription is created.  The endpoint always
answers 200 quickly: a non-2xx or a slow answer makes Withings retry and
eventually cancel the subscription.  Processing happens in the background.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request, Response

from src.dependencies import Pipeline

router = APIRouter(prefix="/integrations/withings", tags=["webhooks"])
logger = logging.getLogger("carelink.webhooks")


async def _read_payload(request: Request) -> dict[str, Any]:
    """Decode a JSON or form-encoded body.  Undecodable bodies yield ``{}``."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Withings webhook with malformed JSON body")
            return {}
        return body if isinstance(body, dict) else {}
    try:
        form = await request.form()
    except Exception as exc:
        logger.warning("Withings webhook with undecodable form body: %s", exc)
        return {}
    return {k: v for k, v in form.items() if isinstance(v, str)}


@router.post("/webhook")
async def withings_webhook(request: Request, pipeline: Pipeline) -> dict:
    payload = await _read_payload(request)
    try:
        pipeline.webhooks.accept(payload)
    except Exception:
        # the answer to Withings is 200 whatever the payload held
        logger.exception("Withings webhook could not be accepted")
    return {"status": "ok"}


@router.api_route("/webhook", methods=["GET", "HEAD"], include_in_schema=False)
async def withings_webhook_probe() -> Response:
    """Subscription probe: Withings checks the callback URL answers 200."""
    return Response(status_code=200)
