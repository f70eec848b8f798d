"""Withings integration endpoints: connect, disconnect, sync and read vitals.

The OAuth callback does not require a bearer token: Withings redirects the
patient's browser to it, so the user is identified through the single-use
``state`` minted by ``/authorize``.  A token that is present must match the
user the state was issued to.  It always answers with a redirect back
to the patient app carrying ``withings=connected`` or an ``error`` code.
"""

from __future__ import annotations

import logging
from typing import Annotated
from urllib.parse import urlencode

import asyncpg
from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse

from src.config import Settings
from src.dependencies import AppSettings, AuthContext, CurrentUser, Pipeline
from src.models.integrations import (
    AuthorizationUrlResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    LiveVitalsResponse,
    MeasurementListResponse,
    MeasurementResponse,
    SubscribeResponse,
    SyncResponse,
)
from src.wearables.base import MeasurementKind
from src.wearables.errors import (
    ConfigurationError,
    IntegrationError,
    InvalidState,
    NoReadings,
)
from src.wearables.pipeline import WithingsPipeline

router = APIRouter(prefix="/integrations/withings", tags=["withings"])
logger = logging.getLogger("carelink.withings")


def _client_redirect(settings: Settings, **params: str) -> RedirectResponse:
    url = f"{settings.client_app_url.rstrip('/')}{settings.client_devices_path}?{urlencode(params)}"
    return RedirectResponse(url, status_code=302)


def _as_floats(values: dict) -> dict[str, float]:
    return {k: float(v) for k, v in values.items()}


async def _after_connect(pipeline: WithingsPipeline, user_id: str) -> None:
    """Initial sync and notification subscription for a fresh connection."""
    try:
        await pipeline.orchestrator.sync(user_id)
    except IntegrationError as exc:
        logger.warning("Initial sync for user %s failed: %s", user_id, exc.code)

    if not pipeline.webhook_url:
        logger.info("WITHINGS_WEBHOOK_URL not set; skipping notification subscription")
        return
    try:
        token = await pipeline.tokens.ensure_valid_token(user_id)
        await pipeline.adapter.subscribe_notifications(token, pipeline.webhook_url)
    except IntegrationError as exc:
        logger.warning("Notification subscription for user %s failed: %s", user_id, exc.code)


# ---------- Authorization ----------

@router.get("/authorize", response_model=AuthorizationUrlResponse)
async def authorize(auth: CurrentUser, pipeline: Pipeline) -> AuthorizationUrlResponse:
    """Start linking a Withings account.  The client navigates to the returned URL."""
    url = await pipeline.tokens.begin_authorization(auth.user_id)
    return AuthorizationUrlResponse(authorization_url=url)


@router.get("/callback")
async def oauth_callback(
    request: Request,
    pipeline: Pipeline,
    settings: AppSettings,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """OAuth2 redirect target.  Always redirects back to the patient app."""
    if error:
        logger.warning("Withings authorization denied: %s", error)
        return _client_redirect(settings, error=error)
    if not code:
        return _client_redirect(settings, error="missing_code")
    if not state:
        return _client_redirect(settings, error="missing_state")

    auth: AuthContext | None = getattr(request.state, "auth", None)
    try:
        credential = await pipeline.tokens.complete_authorization(
            code, state, expected_user_id=auth.user_id if auth else None
        )
    except InvalidState as exc:
        logger.warning("Withings callback with bad state: %s", exc)
        return _client_redirect(settings, error="invalid_state")
    except IntegrationError as exc:
        logger.warning("Withings token exchange failed: %s", exc)
        return _client_redirect(settings, error="token_exchange_failed")
    except (asyncpg.PostgresError, OSError) as exc:
        logger.error("Database error completing Withings authorization: %s", exc)
        return _client_redirect(settings, error="database_error")
    except Exception:
        logger.exception("Unexpected error in Withings callback")
        return _client_redirect(settings, error="internal_error")

    try:
        pipeline.supervisor.spawn(
            _after_connect(pipeline, credential.user_id),
            name=f"withings-connect-{credential.user_id}",
        )
    except RuntimeError as exc:
        logger.warning("Initial sync for user %s not scheduled: %s", credential.user_id, exc)
    logger.info("Withings connected for user %s", credential.user_id)
    return _client_redirect(settings, withings="connected")


@router.post("/force-relink", response_model=AuthorizationUrlResponse)
async def force_relink(auth: CurrentUser, pipeline: Pipeline) -> AuthorizationUrlResponse:
    """Drop the current connection and return a fresh authorization URL."""
    url = await pipeline.tokens.force_relink(auth.user_id)
    return AuthorizationUrlResponse(authorization_url=url)


@router.delete("/connection", response_model=DisconnectResponse)
async def disconnect(auth: CurrentUser, pipeline: Pipeline) -> DisconnectResponse:
    deleted = await pipeline.tokens.disconnect(auth.user_id, reason="user_disconnect")
    return DisconnectResponse(disconnected=deleted)


@router.get("/status", response_model=ConnectionStatusResponse)
async def connection_status(auth: CurrentUser, pipeline: Pipeline) -> ConnectionStatusResponse:
    credential = await pipeline.credentials.get(auth.user_id)
    if credential is None:
        reason = await pipeline.credentials.revocation_reason(auth.user_id)
        return ConnectionStatusResponse(connected=False, needs_reconnect=reason is not None)
    return ConnectionStatusResponse(
        connected=True,
        provider=credential.provider,
        provider_user_id=credential.provider_user_id,
        expires_at=credential.expires_at,
        last_synced_at=credential.last_synced_at,
        scope=credential.scope,
    )


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(auth: CurrentUser, pipeline: Pipeline) -> SubscribeResponse:
    """(Re-)register the webhook callback for the caller's Withings account."""
    if not pipeline.webhook_url:
        raise ConfigurationError("Withings is not configured: missing WITHINGS_WEBHOOK_URL")
    token = await pipeline.tokens.ensure_valid_token(auth.user_id)
    created = await pipeline.adapter.subscribe_notifications(token, pipeline.webhook_url)
    return SubscribeResponse(subscribed=True, created=created, callback_url=pipeline.webhook_url)


# ---------- Data ----------

@router.post("/sync", response_model=SyncResponse)
async def sync_now(auth: CurrentUser, pipeline: Pipeline) -> SyncResponse:
    """Run a sync inline and report what was ingested."""
    result = await pipeline.orchestrator.sync(auth.user_id)
    return SyncResponse(
        groups_fetched=result.groups_fetched,
        records_seen=result.records_seen,
        records_ingested=result.records_ingested,
        live_updates=result.live_updates,
        window_start=result.window_start,
        synced_at=result.synced_at,
    )


@router.get("/latest", response_model=LiveVitalsResponse)
async def latest_vitals(
    auth: CurrentUser,
    pipeline: Pipeline,
    kind: MeasurementKind = MeasurementKind.BLOOD_PRESSURE,
) -> LiveVitalsResponse:
    """Latest captured reading of one device class."""
    snapshot = await pipeline.live_vitals.read(auth.user_id, kind.value)
    if snapshot is None:
        # raises NotConnected or ReconnectRequired when there is no credential
        await pipeline.tokens.require_credential(auth.user_id)
        raise NoReadings(f"No {kind.value} readings yet")
    return LiveVitalsResponse(
        device_class=snapshot.device_class,
        captured_at=snapshot.captured_at,
        updated_at=snapshot.updated_at,
        device_model=snapshot.device_model,
        **_as_floats(snapshot.values),
    )


@router.get("/measurements", response_model=MeasurementListResponse)
async def list_measurements(
    auth: CurrentUser,
    pipeline: Pipeline,
    kind: MeasurementKind | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> MeasurementListResponse:
    records = await pipeline.measurements.list_recent(auth.user_id, kind=kind, limit=limit)
    items = [
        MeasurementResponse(
            provider_group_id=r.provider_group_id,
            kind=r.kind.value,
            captured_at=r.captured_at,
            device_id=r.device_id,
            device_model=r.device_model,
            **_as_floats(r.values),
        )
        for r in records
    ]
    return MeasurementListResponse(items=items, count=len(items))
