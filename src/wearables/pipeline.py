"""Wiring for the Withings integration.

``build_pipeline`` assembles adapter, stores, token manager, orchestrator,
webhook receiver and poller from settings.  The FastAPI lifespan builds one
pipeline per process and stores it on ``app.state.pipeline``; routes reach it
through ``src.dependencies.get_pipeline``.  Tests build one from in-memory
stores instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx

from src.config import Settings
from src.services.audit import AuditTrail, PostgresAuditTrail
from src.wearables.adapters import get_adapter
from src.wearables.base import DeviceCloudAdapter, utc_now
from src.wearables.config_loader import ProviderConfig, get_provider_config
from src.wearables.normalizer import MeasurementNormalizer
from src.wearables.stores import (
    CredentialStore,
    LiveVitalsCache,
    MeasurementStore,
    OAuthStateStore,
    PostgresCredentialStore,
    PostgresLiveVitalsCache,
    PostgresMeasurementStore,
    PostgresOAuthStateStore,
)
from src.wearables.sync.orchestrator import SyncOrchestrator
from src.wearables.sync.scheduler import PollScheduler
from src.wearables.sync.tasks import BackgroundTaskSupervisor
from src.wearables.sync.webhook import WebhookReceiver
from src.wearables.tokens import TokenLifecycleManager


@dataclass
class WithingsPipeline:
    adapter: DeviceCloudAdapter
    credentials: CredentialStore
    states: OAuthStateStore
    measurements: MeasurementStore
    live_vitals: LiveVitalsCache
    audit: AuditTrail
    tokens: TokenLifecycleManager
    orchestrator: SyncOrchestrator
    webhooks: WebhookReceiver
    scheduler: PollScheduler
    supervisor: BackgroundTaskSupervisor
    webhook_url: str | None = None


def build_pipeline(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    *,
    adapter: DeviceCloudAdapter | None = None,
    credentials: CredentialStore | None = None,
    states: OAuthStateStore | None = None,
    measurements: MeasurementStore | None = None,
    live_vitals: LiveVitalsCache | None = None,
    audit: AuditTrail | None = None,
    config: ProviderConfig | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> WithingsPipeline:
    """Assemble the integration.  Any collaborator can be overridden."""
    config = config or get_provider_config()
    if adapter is None:
        adapter = get_adapter(config.provider)(
            client_id=settings.withings_client_id,
            client_secret=settings.withings_client_secret,
            redirect_uri=settings.withings_redirect_uri,
            config=config,
            http_client=http_client,
            timeout=settings.provider_timeout_seconds,
            clock=clock,
        )
    credentials = credentials or PostgresCredentialStore()
    states = states or PostgresOAuthStateStore()
    measurements = measurements or PostgresMeasurementStore()
    live_vitals = live_vitals or PostgresLiveVitalsCache()
    audit = audit or PostgresAuditTrail()
    supervisor = BackgroundTaskSupervisor()

    tokens = TokenLifecycleManager(
        adapter,
        credentials,
        states,
        audit,
        state_ttl_seconds=settings.oauth_state_ttl_seconds,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
        clock=clock,
    )
    orchestrator = SyncOrchestrator(
        adapter,
        tokens,
        credentials,
        measurements,
        live_vitals,
        MeasurementNormalizer(config),
        audit,
        lookback_days=settings.sync_lookback_days,
        clock=clock,
    )
    webhooks = WebhookReceiver(
        credentials,
        orchestrator,
        supervisor,
        audit,
        sync_timeout_seconds=settings.sync_timeout_seconds,
    )
    scheduler = PollScheduler(
        credentials,
        orchestrator,
        interval_seconds=settings.poll_interval_seconds,
        max_concurrent=settings.poll_max_concurrent,
        clock=clock,
    )
    return WithingsPipeline(
        adapter=adapter,
        credentials=credentials,
        states=states,
        measurements=measurements,
        live_vitals=live_vitals,
        audit=audit,
        tokens=tokens,
        orchestrator=orchestrator,
        webhooks=webhooks,
        scheduler=scheduler,
        supervisor=supervisor,
        webhook_url=settings.withings_webhook_url,
    )
