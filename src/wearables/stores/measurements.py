"""Measurement Store: idempotent, append-mostly measurement history."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import asyncpg

from src.services import database
from src.wearables.base import VALUE_FIELDS, MeasurementKind, MeasurementRecord
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("carelink.wearables.stores.measurements")

_COLUMNS = [
    "provider_group_id",
    "user_id",
    "kind",
    *VALUE_FIELDS,
    "captured_at",
    "device_id",
    "device_model",
]


class MeasurementStore(ABC):
    @abstractmethod
    async def insert(self, record: MeasurementRecord) -> bool:
        """Insert a record unless (group id, kind) already exists.

        Returns:
            True if a row was written, False if it was a duplicate.
        """

    @abstractmethod
    async def list_recent(
        self,
        user_id: str,
        kind: MeasurementKind | None = None,
        limit: int = 50,
    ) -> list[MeasurementRecord]:
        """Most recently captured records first."""


def _from_row(row: asyncpg.Record) -> MeasurementRecord:
    return MeasurementRecord(
        provider_group_id=row["provider_group_id"],
        user_id=row["user_id"],
        kind=MeasurementKind(row["kind"]),
        values={f: row[f] for f in VALUE_FIELDS if row[f] is not None},
        captured_at=row["captured_at"],
        device_id=row["device_id"],
        device_model=row["device_model"],
    )


class PostgresMeasurementStore(MeasurementStore):
    """Measurement store backed by the ``withings_measurements`` table."""

    _INSERT = build_upsert_query(
        "withings_measurements",
        _COLUMNS,
        conflict_columns=["provider_group_id", "kind"],
        update_columns=[],
        returning="provider_group_id",
    )

    async def insert(self, record: MeasurementRecord) -> bool:
        inserted = await database.fetchval(
            self._INSERT,
            record.provider_group_id,
            record.user_id,
            record.kind.value,
            *(record.values.get(f) for f in VALUE_FIELDS),
            record.captured_at,
            record.device_id,
            record.device_model,
        )
        if inserted is None:
            logger.debug(
                "Duplicate measurement %s/%s ignored", record.provider_group_id, record.kind.value
            )
        return inserted is not None

    async def list_recent(
        self,
        user_id: str,
        kind: MeasurementKind | None = None,
        limit: int = 50,
    ) -> list[MeasurementRecord]:
        if kind is None:
            rows = await database.fetch(
                """
                SELECT * FROM withings_measurements
                 WHERE user_id = $1
                 ORDER BY captured_at DESC
                 LIMIT $2
                """,
                user_id,
                limit,
                user_id=user_id,
            )
        else:
            rows = await database.fetch(
                """
                SELECT * FROM withings_measurements
                 WHERE user_id = $1 AND kind = $2
                 ORDER BY captured_at DESC
                 LIMIT $3
                """,
                user_id,
                kind.value,
                limit,
                user_id=user_id,
            )
        return [_from_row(r) for r in rows]
