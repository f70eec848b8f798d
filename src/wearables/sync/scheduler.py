"""Background poll scheduler for connected devices.

Webhooks are the primary ingestion path; the poller is the safety net for
notifications Withings never delivered.  Every ``interval_seconds`` it:

1. Lists credentials not synced within the interval
2. Syncs each through the orchestrator, at most ``max_concurrent`` at a time
3. Logs a summary; per-user failures never stop the loop
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.wearables.base import utc_now
from src.wearables.errors import IntegrationError
from src.wearables.stores import CredentialStore
from src.wearables.sync.orchestrator import SyncOrchestrator, SyncResult

logger = logging.getLogger("carelink.wearables.sync.scheduler")


@dataclass
class PollOutcome:
    """Result of one poll cycle.

    Attributes:
        user_id: Internal CareLink user id.
        status:  'success' or the error code of the failure.
        result:  SyncResult when status == 'success'.
    """

    user_id: str
    status: str
    result: SyncResult | None = None


class PollScheduler:
    """Periodically sync every credential that is due.

    Usage::

        scheduler = PollScheduler(credentials, orchestrator, interval_seconds=3600)
        supervisor.spawn(scheduler.run_forever(), name="withings-poller", long_running=True)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        orchestrator: SyncOrchestrator,
        interval_seconds: int = 3600,
        max_concurrent: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._max_concurrent = max_concurrent
        self._clock = clock

    async def run_once(self) -> list[PollOutcome]:
        """Sync every due credential once and return per-user outcomes."""
        due = await self._credentials.list_due(self._clock() - timedelta(seconds=self._interval))
        if not due:
            logger.debug("PollScheduler: nothing due")
            return []

        logger.info("PollScheduler: syncing %d connection(s)", len(due))
        semaphore = asyncio.Semaphore(self._max_concurrent)
        outcomes = await asyncio.gather(
            *(self._run_one(c.user_id, semaphore) for c in due)
        )

        logger.info(
            "PollScheduler: %d synced, %d errors",
            len(outcomes),
            sum(1 for o in outcomes if o.status != "success"),
        )
        return list(outcomes)

    async def _run_one(self, user_id: str, semaphore: asyncio.Semaphore) -> PollOutcome:
        async with semaphore:
            try:
                result = await self._orchestrator.sync(user_id)
            except IntegrationError as exc:
                logger.warning("Poll sync for user %s failed: %s", user_id, exc.code)
                return PollOutcome(user_id=user_id, status=exc.code)
            except Exception:
                logger.exception("Poll sync for user %s crashed", user_id)
                return PollOutcome(user_id=user_id, status="internal_error")
            return PollOutcome(user_id=user_id, status="success", result=result)

    async def run_forever(self) -> None:
        """Poll until cancelled."""
        logger.info("PollScheduler started (interval=%ds)", self._interval)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("PollScheduler cycle failed")
            await asyncio.sleep(self._interval)
