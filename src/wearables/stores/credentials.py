"""Credential Store: one OAuth credential per (user, provider)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime

import asyncpg

from src.services import database
from src.wearables.base import OAuthCredential, OAuthTokens
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("carelink.wearables.stores.credentials")

_COLUMNS = [
    "user_id",
    "provider",
    "provider_user_id",
    "access_token",
    "refresh_token",
    "expires_at",
    "scope",
]


class CredentialStore(ABC):
    """Durable OAuth credentials keyed by internal user id."""

    provider: str = "withings"

    @abstractmethod
    async def get(self, user_id: str) -> OAuthCredential | None:
        ...

    @abstractmethod
    async def get_by_provider_user(self, provider_user_id: str) -> OAuthCredential | None:
        """Resolve a webhook's provider-side user id to a credential."""

    @abstractmethod
    async def upsert(self, credential: OAuthCredential) -> None:
        """Create or fully replace the credential for ``credential.user_id``."""

    @abstractmethod
    async def update_tokens(self, user_id: str, tokens: OAuthTokens) -> OAuthCredential | None:
        """Replace the token pair in place after a refresh.

        The stored expiry never moves backwards: it becomes
        ``max(stored, tokens.expires_at)``.

        Returns:
            The updated credential, or None if it was deleted meanwhile.
        """

    @abstractmethod
    async def delete(self, user_id: str) -> bool:
        """Delete the credential.  Returns True if one existed."""

    @abstractmethod
    async def mark_revoked(self, user_id: str, reason: str) -> None:
        """Remember that the user's grant was rejected and must be re-authorized."""

    @abstractmethod
    async def revocation_reason(self, user_id: str) -> str | None:
        """Why the user's credential was revoked, or None if it was not."""

    @abstractmethod
    async def clear_revoked(self, user_id: str) -> None:
        ...

    @abstractmethod
    async def mark_synced(self, user_id: str, synced_at: datetime) -> None:
        ...

    @abstractmethod
    async def list_due(self, synced_before: datetime) -> list[OAuthCredential]:
        """Credentials never synced or last synced before ``synced_before``."""


def _from_row(row: asyncpg.Record) -> OAuthCredential:
    return OAuthCredential(
        user_id=row["user_id"],
        provider=row["provider"],
        provider_user_id=row["provider_user_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        scope=list(row["scope"] or []),
        last_synced_at=row["last_synced_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresCredentialStore(CredentialStore):
    """Credential store backed by the ``withings_credentials`` table."""

    _UPSERT = build_upsert_query(
        "withings_credentials",
        _COLUMNS,
        conflict_columns=["user_id", "provider"],
    )

    async def get(self, user_id: str) -> OAuthCredential | None:
        row = await database.fetchrow(
            "SELECT * FROM withings_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            self.provider,
        )
        return _from_row(row) if row else None

    async def get_by_provider_user(self, provider_user_id: str) -> OAuthCredential | None:
        row = await database.fetchrow(
            "SELECT * FROM withings_credentials WHERE provider_user_id = $1 AND provider = $2",
            provider_user_id,
            self.provider,
        )
        return _from_row(row) if row else None

    async def upsert(self, credential: OAuthCredential) -> None:
        await database.execute(
            self._UPSERT,
            credential.user_id,
            self.provider,
            credential.provider_user_id,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
            credential.scope,
        )
        logger.info("Stored %s credential for user %s", self.provider, credential.user_id)

    async def update_tokens(self, user_id: str, tokens: OAuthTokens) -> OAuthCredential | None:
        row = await database.fetchrow(
            """
            UPDATE withings_credentials
               SET access_token = $3,
                   refresh_token = $4,
                   expires_at = GREATEST(expires_at, $5),
                   updated_at = NOW()
             WHERE user_id = $1 AND provider = $2
         RETURNING *
            """,
            user_id,
            self.provider,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
        )
        return _from_row(row) if row else None

    async def delete(self, user_id: str) -> bool:
        status = await database.execute(
            "DELETE FROM withings_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            self.provider,
        )
        return status.endswith(" 1")

    async def mark_revoked(self, user_id: str, reason: str) -> None:
        await database.execute(
            """
            INSERT INTO withings_revoked_credentials (user_id, provider, reason)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id, provider)
            DO UPDATE SET reason = EXCLUDED.reason, revoked_at = NOW()
            """,
            user_id,
            self.provider,
            reason,
        )

    async def revocation_reason(self, user_id: str) -> str | None:
        return await database.fetchval(
            "SELECT reason FROM withings_revoked_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            self.provider,
        )

    async def clear_revoked(self, user_id: str) -> None:
        await database.execute(
            "DELETE FROM withings_revoked_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            self.provider,
        )

    async def mark_synced(self, user_id: str, synced_at: datetime) -> None:
        await database.execute(
            """
            UPDATE withings_credentials
               SET last_synced_at = GREATEST(COALESCE(last_synced_at, $3), $3)
             WHERE user_id = $1 AND provider = $2
            """,
            user_id,
            self.provider,
            synced_at,
        )

    async def list_due(self, synced_before: datetime) -> list[OAuthCredential]:
        rows = await database.fetch(
            """
            SELECT * FROM withings_credentials
             WHERE provider = $1
               AND (last_synced_at IS NULL OR last_synced_at < $2)
             ORDER BY last_synced_at NULLS FIRST
            """,
            self.provider,
            synced_before,
        )
        return [_from_row(r) for r in rows]
