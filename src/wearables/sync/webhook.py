"""Webhook Receiver: acknowledge provider notifications, sync in the background.

Withings POSTs a form-encoded (occasionally JSON) notification when new data
is available::

    userid=1234567&appli=4&startdate=1771840700&enddate=1771840800

The HTTP handler acknowledges immediately; processing is detached onto the
background supervisor so a slow sync never makes Withings retry or disable
the subscription.  Processing resolves the provider user id to a credential
and runs an idempotent sync over the announced window, bounded by a timeout.
Redelivered notifications simply re-run the same idempotent sync.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from src.services.audit import AuditEvent, AuditTrail
from src.wearables.base import DeviceCloudAdapter
from src.wearables.errors import IntegrationError, SyncTimedOut
from src.wearables.stores import CredentialStore
from src.wearables.sync.orchestrator import SyncOrchestrator, SyncResult
from src.wearables.sync.tasks import BackgroundTaskSupervisor

logger = logging.getLogger("carelink.wearables.sync.webhook")


@dataclass(frozen=True)
class WebhookNotification:
    """A parsed provider notification.

    Attributes:
        provider_user_id: Provider-side account id (``userid``).
        appli:            Notification category, if sent.
        start:            Start of the announced capture window, if sent.
        end:              End of the announced capture window, if sent.
    """

    provider_user_id: str
    appli: int | None = None
    start: datetime | None = None
    end: datetime | None = None


def parse_notification(payload: Mapping[str, Any]) -> WebhookNotification | None:
    """Parse a notification body.  Returns None when ``userid`` is absent."""
    user_id = payload.get("userid")
    if user_id is None or str(user_id).strip() == "":
        return None
    start = DeviceCloudAdapter._from_epoch(payload.get("startdate"))
    end = DeviceCloudAdapter._from_epoch(payload.get("enddate"))
    if start is not None and end is not None and end < start:
        start, end = None, None
    return WebhookNotification(
        provider_user_id=str(user_id).strip(),
        appli=DeviceCloudAdapter._safe_int(payload.get("appli")),
        start=start,
        end=end,
    )


class WebhookReceiver:
    def __init__(
        self,
        credentials: CredentialStore,
        orchestrator: SyncOrchestrator,
        supervisor: BackgroundTaskSupervisor,
        audit: AuditTrail,
        sync_timeout_seconds: float = 30.0,
    ) -> None:
        self._credentials = credentials
        self._orchestrator = orchestrator
        self._supervisor = supervisor
        self._audit = audit
        self._timeout = sync_timeout_seconds

    def accept(self, payload: Mapping[str, Any]) -> WebhookNotification | None:
        """Acknowledge a notification and detach its processing.

        Never raises: a notification without ``userid`` is logged and
        dropped, as is one that arrives while the supervisor shuts down.
        """
        notification = parse_notification(payload)
        if notification is None:
            logger.warning("Withings webhook without userid ignored: keys=%s", sorted(payload))
            return None
        logger.info(
            "Withings webhook for provider user %s (appli=%s)",
            notification.provider_user_id,
            notification.appli,
        )
        try:
            self._supervisor.spawn(
                self.process(notification),
                name=f"withings-webhook-{notification.provider_user_id}",
            )
        except RuntimeError as exc:
            # shutting down; the next poll picks the data up
            logger.warning(
                "Webhook for provider user %s not processed: %s",
                notification.provider_user_id,
                exc,
            )
        return notification

    async def process(self, notification: WebhookNotification) -> SyncResult | None:
        """Resolve the user and run a bounded sync.  Failures are logged, not raised."""
        credential = await self._credentials.get_by_provider_user(notification.provider_user_id)
        if credential is None:
            logger.warning(
                "Webhook for unknown provider user %s dropped", notification.provider_user_id
            )
            return None

        user_id = credential.user_id
        try:
            return await asyncio.wait_for(
                self._orchestrator.sync(user_id, since=notification.start, until=notification.end),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            error = SyncTimedOut(f"Webhook sync exceeded {self._timeout:.0f}s")
            logger.error("Webhook sync for user %s timed out: %s", user_id, error)
            await self._audit.record(AuditEvent.SYNC_TIMED_OUT, user_id, timeout=self._timeout)
        except IntegrationError as exc:
            logger.warning("Webhook sync for user %s failed: %s (%s)", user_id, exc.code, exc)
        return None
