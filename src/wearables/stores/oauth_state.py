"""Single-use OAuth ``state`` values binding a consent redirect to a user."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.services import database


class OAuthStateStore(ABC):
    @abstractmethod
    async def put(self, state: str, user_id: str, expires_at: datetime) -> None:
        ...

    @abstractmethod
    async def consume(self, state: str, now: datetime) -> str | None:
        """Atomically remove ``state`` and return its user id.

        Returns None if the state is unknown, already used, or expired.
        """

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        ...


class PostgresOAuthStateStore(OAuthStateStore):
    async def put(self, state: str, user_id: str, expires_at: datetime) -> None:
        await database.execute(
            "INSERT INTO withings_oauth_states (state, user_id, expires_at) VALUES ($1, $2, $3)",
            state,
            user_id,
            expires_at,
        )

    async def consume(self, state: str, now: datetime) -> str | None:
        row = await database.fetchrow(
            "DELETE FROM withings_oauth_states WHERE state = $1 RETURNING user_id, expires_at",
            state,
        )
        if row is None or row["expires_at"] <= now:
            return None
        return row["user_id"]

    async def purge_expired(self, now: datetime) -> int:
        status = await database.execute(
            "DELETE FROM withings_oauth_states WHERE expires_at <= $1", now
        )
        return int(status.split()[-1])
