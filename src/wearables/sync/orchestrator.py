"""Sync Orchestrator: pull, normalize and persist one user's measurements.

Workflow for ``sync(user_id)``:
1. Obtain a valid access token (refreshing if needed)
2. Compute the window: an explicit webhook window, else
   ``max(last_synced_at, now - lookback_days)``
3. Fetch measurement groups from the provider
4. Normalize each group and insert every record idempotently
5. Apply the newest record per device class to the live vitals cache
6. Advance ``last_synced_at`` only when every group persisted and the
   default window was used; a webhook window leaves the watermark alone

Every outcome is written to the audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.services.audit import AuditEvent, AuditTrail
from src.wearables.base import (
    DeviceCloudAdapter,
    LiveVitalsSnapshot,
    MeasurementRecord,
    utc_now,
)
from src.wearables.errors import (
    IntegrationError,
    InvalidAccessToken,
    PartialFailure,
    ReconnectRequired,
)
from src.wearables.normalizer import MeasurementNormalizer
from src.wearables.stores import CredentialStore, LiveVitalsCache, MeasurementStore
from src.wearables.sync.dedup import InMemoryDedupCache, measurement_key
from src.wearables.tokens import TokenLifecycleManager

logger = logging.getLogger("carelink.wearables.sync.orchestrator")


@dataclass
class SyncResult:
    """Result of one successful sync.

    Attributes:
        user_id:          Internal CareLink user id.
        source:           Provider slug.
        window_start:     Start of the queried window.
        window_end:       End of the queried window (None = up to now).
        groups_fetched:   Measurement groups returned by the provider.
        records_seen:     Canonical records produced by the normalizer.
        records_ingested: Records newly written (duplicates excluded).
        live_updates:     Device classes whose live cache row changed.
        synced_at:        UTC completion time.
    """

    user_id: str
    source: str
    window_start: datetime
    window_end: datetime | None = None
    groups_fetched: int = 0
    records_seen: int = 0
    records_ingested: int = 0
    live_updates: list[str] = field(default_factory=list)
    synced_at: datetime = field(default_factory=utc_now)


class SyncOrchestrator:
    """Run the pull-normalize-persist pipeline for one user at a time.

    Usage::

        orchestrator = SyncOrchestrator(adapter, tokens, credentials, ...)
        result = await orchestrator.sync(user_id)
    """

    def __init__(
        self,
        adapter: DeviceCloudAdapter,
        tokens: TokenLifecycleManager,
        credentials: CredentialStore,
        measurements: MeasurementStore,
        live_vitals: LiveVitalsCache,
        normalizer: MeasurementNormalizer,
        audit: AuditTrail,
        lookback_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._adapter = adapter
        self._tokens = tokens
        self._credentials = credentials
        self._measurements = measurements
        self._live_vitals = live_vitals
        self._normalizer = normalizer
        self._audit = audit
        self._lookback = timedelta(days=lookback_days)
        self._clock = clock

    def sync_window_start(self, last_synced_at: datetime | None) -> datetime:
        """Start of the default window: the later of last sync and the look-back floor."""
        floor = self._clock() - self._lookback
        if last_synced_at is None:
            return floor
        return max(last_synced_at, floor)

    async def sync(
        self,
        user_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> SyncResult:
        """Synchronize one user's measurements.

        Args:
            user_id: Internal CareLink user id.
            since:   Explicit window start (webhook ``startdate``).
            until:   Explicit window end (webhook ``enddate``).

        Raises:
            NotConnected:        No credential.
            ReconnectRequired:   The provider rejected the token; credential deleted.
            RateLimited:         The provider throttled us.
            ProviderUnavailable: The provider could not be reached.
            PartialFailure:      Some groups failed to persist.
        """
        try:
            result = await self._sync(user_id, since, until)
        except PartialFailure as exc:
            await self._audit.record(
                AuditEvent.SYNC_PARTIAL,
                user_id,
                failed_groups=exc.failed,
                records_ingested=exc.records_ingested,
            )
            raise
        except IntegrationError as exc:
            await self._audit.record(AuditEvent.SYNC_FAILED, user_id, error=exc.code)
            raise
        except Exception as exc:
            await self._audit.record(
                AuditEvent.SYNC_FAILED, user_id, error="internal_error", exception=type(exc).__name__
            )
            raise

        await self._audit.record(
            AuditEvent.SYNC_SUCCEEDED,
            user_id,
            groups=result.groups_fetched,
            records_ingested=result.records_ingested,
        )
        return result

    async def _sync(
        self,
        user_id: str,
        since: datetime | None,
        until: datetime | None,
    ) -> SyncResult:
        access_token = await self._tokens.ensure_valid_token(user_id)

        credential = await self._tokens.require_credential(user_id)
        window_start = since or self.sync_window_start(credential.last_synced_at)

        try:
            groups = await self._adapter.fetch_measure_groups(access_token, window_start, until)
        except InvalidAccessToken as exc:
            logger.warning("Access token rejected for user %s: %s", user_id, exc)
            await self._tokens.revoke(user_id, reason="access_token_rejected")
            raise ReconnectRequired("The device connection was revoked; please reconnect") from exc

        result = SyncResult(
            user_id=user_id,
            source=self._adapter.SOURCE_ID,
            window_start=window_start,
            window_end=until,
            groups_fetched=len(groups),
        )

        succeeded: list[str] = []
        failed: list[str] = []
        newest: dict[str, MeasurementRecord] = {}
        seen = InMemoryDedupCache()

        for group in groups:
            records = self._normalizer.normalize(group, user_id)
            if not records:
                continue
            group_id = records[0].provider_group_id
            try:
                for record in records:
                    result.records_seen += 1
                    key = measurement_key(record)
                    if seen.is_seen(key):
                        continue
                    seen.mark_seen(key)
                    if await self._measurements.insert(record):
                        result.records_ingested += 1
                    current = newest.get(record.device_class)
                    if current is None or record.captured_at >= current.captured_at:
                        newest[record.device_class] = record
            except Exception:
                logger.exception("Failed to persist measurement group %s for user %s", group_id, user_id)
                failed.append(group_id)
            else:
                succeeded.append(group_id)

        for device_class, record in newest.items():
            snapshot = LiveVitalsSnapshot(
                user_id=user_id,
                device_class=device_class,
                values=record.values,
                captured_at=record.captured_at,
                provider_group_id=record.provider_group_id,
                device_model=record.device_model,
            )
            try:
                if await self._live_vitals.update(snapshot):
                    result.live_updates.append(device_class)
            except Exception:
                logger.exception(
                    "Failed to update live %s vitals for user %s", device_class, user_id
                )
                if record.provider_group_id in succeeded:
                    succeeded.remove(record.provider_group_id)
                if record.provider_group_id not in failed:
                    failed.append(record.provider_group_id)

        if failed:
            raise PartialFailure(succeeded, failed, result.records_ingested)

        result.synced_at = self._clock()
        # a webhook window covers only part of the gap since the last full sync
        if since is None:
            await self._credentials.mark_synced(user_id, result.synced_at)
        logger.info(
            "Sync complete: %s/%s → %d groups, %d new records",
            user_id,
            result.source,
            result.groups_fetched,
            result.records_ingested,
        )
        return result
