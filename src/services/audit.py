"""Integration audit trail.

Records credential deletions and sync outcomes to ``integration_audit_log``.
Auditing never breaks the operation being audited: a failed write is logged
and swallowed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from src.services import database

logger = logging.getLogger("carelink.audit")


class AuditEvent:
    CREDENTIAL_CREATED = "credential_created"
    CREDENTIAL_DELETED = "credential_deleted"
    TOKEN_REFRESHED = "token_refreshed"
    SYNC_SUCCEEDED = "sync_succeeded"
    SYNC_FAILED = "sync_failed"
    SYNC_PARTIAL = "sync_partial"
    SYNC_TIMED_OUT = "sync_timed_out"


class AuditTrail:
    """Base audit trail: logs every event and delegates persistence to ``_write``."""

    async def record(self, event: str, user_id: str | None, **detail: Any) -> None:
        logger.info("audit %s user=%s %s", event, user_id, detail)
        try:
            await self._write(event, user_id, detail)
        except Exception:
            logger.exception("Failed to write audit event %s for user %s", event, user_id)

    async def _write(self, event: str, user_id: str | None, detail: dict[str, Any]) -> None:
        """Persist an event.  The base implementation only logs."""


class PostgresAuditTrail(AuditTrail):
    async def _write(self, event: str, user_id: str | None, detail: dict[str, Any]) -> None:
        await database.execute(
            "INSERT INTO integration_audit_log (event, user_id, detail) VALUES ($1, $2, $3::jsonb)",
            event,
            user_id,
            json.dumps(detail, default=str),
        )
