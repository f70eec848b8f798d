"""Idempotent writes for Withings ingestion.

A measurement group can arrive several times: a redelivered notification,
two overlapping sync windows, a manual sync racing a webhook.  Repeats must
leave storage unchanged, so every write is an ``INSERT ... ON CONFLICT``
against a natural key:

    withings_measurements   (provider_group_id, kind)   insert-or-ignore
    live_vitals             (user_id, device_class)     guarded by captured_at
    withings_credentials    (user_id, provider)         replace on reconnect

``InMemoryDedupCache`` only skips repeats inside a single batch; the
constraints above are what make ingestion idempotent across processes.
"""

from __future__ import annotations

import logging

from src.wearables.base import MeasurementRecord

logger = logging.getLogger("carelink.wearables.sync.dedup")


def measurement_key(record: MeasurementRecord) -> str:
    """``"<grpid>:<kind>"``, mirroring the withings_measurements unique key."""
    return f"{record.provider_group_id}:{record.kind.value}"


class InMemoryDedupCache:
    """Keys already handled in the current sync batch."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    where: str | None = None,
    returning: str | None = None,
) -> str:
    """Render a parameterized ``INSERT ... ON CONFLICT`` statement.

    Args:
        table:            Target table.
        columns:          Inserted columns, bound as ``$1..$n`` in order.
        conflict_columns: The unique key the conflict is detected on.
        update_columns:   Columns overwritten on conflict.  ``None`` means
                          every non-key column; ``[]`` means ``DO NOTHING``.
        where:            Condition the conflicting row must satisfy to be
                          overwritten, e.g. a capture-time guard.
        returning:        Optional ``RETURNING`` expression.  With
                          ``DO NOTHING`` a duplicate returns no row.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    bind = ", ".join(f"${n}" for n in range(1, len(columns) + 1))
    sql = (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({bind}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) "
    )

    if not update_columns:
        sql += "DO NOTHING"
    else:
        assignments = [f"{col} = EXCLUDED.{col}" for col in update_columns]
        assignments.append("updated_at = NOW()")
        sql += "DO UPDATE SET " + ", ".join(assignments)
        if where:
            sql += f" WHERE {where}"

    if returning:
        sql += f" RETURNING {returning}"
    return sql
