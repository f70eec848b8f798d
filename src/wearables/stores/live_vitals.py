"""Live Vitals Cache: the most recently captured reading per (user, device class).

Writes are last-write-wins by *capture* time, not arrival time.  A reading
delivered late (an old group replayed by a poll after a newer webhook) never
replaces a newer one.  The comparison happens inside the upsert statement so
concurrent writers cannot interleave between a read and a write.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import asyncpg

from src.services import database
from src.wearables.base import VALUE_FIELDS, LiveVitalsSnapshot
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("carelink.wearables.stores.live_vitals")

_COLUMNS = [
    "user_id",
    "device_class",
    *VALUE_FIELDS,
    "captured_at",
    "provider_group_id",
    "device_model",
]


class LiveVitalsCache(ABC):
    @abstractmethod
    async def update(self, snapshot: LiveVitalsSnapshot) -> bool:
        """Apply ``snapshot`` iff its capture time is >= the stored one.

        Returns:
            True if the cache row now holds ``snapshot``.
        """

    @abstractmethod
    async def read(self, user_id: str, device_class: str) -> LiveVitalsSnapshot | None:
        ...


def _from_row(row: asyncpg.Record) -> LiveVitalsSnapshot:
    return LiveVitalsSnapshot(
        user_id=row["user_id"],
        device_class=row["device_class"],
        values={f: row[f] for f in VALUE_FIELDS if row[f] is not None},
        captured_at=row["captured_at"],
        provider_group_id=row["provider_group_id"],
        device_model=row["device_model"],
        updated_at=row["updated_at"],
    )


class PostgresLiveVitalsCache(LiveVitalsCache):
    """Live cache backed by the ``live_vitals`` table."""

    _UPSERT = build_upsert_query(
        "live_vitals",
        _COLUMNS,
        conflict_columns=["user_id", "device_class"],
        where="live_vitals.captured_at <= EXCLUDED.captured_at",
        returning="captured_at",
    )

    async def update(self, snapshot: LiveVitalsSnapshot) -> bool:
        applied = await database.fetchval(
            self._UPSERT,
            snapshot.user_id,
            snapshot.device_class,
            *(snapshot.values.get(f) for f in VALUE_FIELDS),
            snapshot.captured_at,
            snapshot.provider_group_id,
            snapshot.device_model,
        )
        if applied is None:
            logger.debug(
                "Live %s reading for user %s is older than cached; kept newer",
                snapshot.device_class,
                snapshot.user_id,
            )
        return applied is not None

    async def read(self, user_id: str, device_class: str) -> LiveVitalsSnapshot | None:
        row = await database.fetchrow(
            "SELECT * FROM live_vitals WHERE user_id = $1 AND device_class = $2",
            user_id,
            device_class,
            user_id=user_id,
        )
        return _from_row(row) if row else None
