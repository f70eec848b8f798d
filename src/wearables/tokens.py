"""Token Lifecycle Manager.

Owns the OAuth lifecycle of a provider credential:

1. ``begin_authorization``   — mint a single-use state, return the consent URL
2. ``complete_authorization`` — validate state, exchange code, store credential
3. ``ensure_valid_token``    — hand out a usable access token, refreshing
   ahead of expiry (single-flighted per user)
4. ``revoke`` / ``disconnect`` / ``force_relink`` — drop the credential

A refresh the provider *rejects* means the grant is gone: the credential is
deleted and the caller gets ``ReconnectRequired``, as does every later
caller until the user authorizes again.  A refresh that merely
*fails* (network, timeout, 5xx) leaves the credential untouched and surfaces
``ProviderUnavailable`` so a later attempt can succeed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from src.services.audit import AuditEvent, AuditTrail
from src.wearables.base import DeviceCloudAdapter, OAuthCredential, utc_now
from src.wearables.errors import (
    InvalidState,
    NotConnected,
    ProviderRejected,
    ReconnectRequired,
    TokenExchangeFailed,
)
from src.wearables.singleflight import SingleFlight
from src.wearables.stores import CredentialStore, OAuthStateStore

logger = logging.getLogger("carelink.wearables.tokens")


class TokenLifecycleManager:
    """Authorize, refresh and revoke provider credentials."""

    def __init__(
        self,
        adapter: DeviceCloudAdapter,
        credentials: CredentialStore,
        states: OAuthStateStore,
        audit: AuditTrail,
        state_ttl_seconds: int = 600,
        refresh_margin_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._adapter = adapter
        self._credentials = credentials
        self._states = states
        self._audit = audit
        self._state_ttl = timedelta(seconds=state_ttl_seconds)
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._refreshes: SingleFlight[str] = SingleFlight()

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def begin_authorization(self, user_id: str) -> str:
        """Persist a fresh state bound to ``user_id`` and return the consent URL.

        Raises:
            ConfigurationError: If the provider client is not configured.
        """
        state = secrets.token_urlsafe(32)
        # build first so a misconfigured client never leaves orphan states behind
        url = self._adapter.build_authorization_url(state)
        now = self._clock()
        purged = await self._states.purge_expired(now)
        if purged:
            logger.debug("Purged %d expired OAuth state(s)", purged)
        await self._states.put(state, user_id, now + self._state_ttl)
        logger.info("Started %s authorization for user %s", self._adapter.SOURCE_ID, user_id)
        return url

    async def complete_authorization(
        self,
        code: str,
        state: str,
        expected_user_id: str | None = None,
    ) -> OAuthCredential:
        """Finish the authorization code flow.

        Args:
            code:             Authorization code from the callback.
            state:            State echoed back by the provider.
            expected_user_id: If the callback is authenticated, the caller's id;
                              a state bound to anyone else is rejected.

        Raises:
            InvalidState:        Unknown, expired, already-used or foreign state.
            TokenExchangeFailed: The provider rejected the code.
            ProviderUnavailable: The provider could not be reached.
        """
        user_id = await self._states.consume(state, self._clock())
        if user_id is None:
            raise InvalidState("OAuth state is unknown or expired")
        if expected_user_id is not None and expected_user_id != user_id:
            logger.warning("OAuth state for user %s presented by %s", user_id, expected_user_id)
            raise InvalidState("OAuth state belongs to a different user")

        try:
            tokens = await self._adapter.exchange_code(code)
        except ProviderRejected as exc:
            logger.warning("Code exchange rejected for user %s: %s", user_id, exc)
            raise TokenExchangeFailed(str(exc)) from exc

        credential = OAuthCredential(
            user_id=user_id,
            provider=self._adapter.SOURCE_ID,
            provider_user_id=tokens.provider_user_id or "",
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            scope=tokens.scope,
        )
        await self._credentials.upsert(credential)
        await self._credentials.clear_revoked(user_id)
        await self._audit.record(
            AuditEvent.CREDENTIAL_CREATED,
            user_id,
            provider_user_id=credential.provider_user_id,
        )
        return credential

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def require_credential(self, user_id: str) -> OAuthCredential:
        """Return the stored credential.

        Raises:
            ReconnectRequired: The credential was deleted after the provider
                rejected it, and the user has not re-authorized since.
            NotConnected:      The user never connected, or disconnected.
        """
        credential = await self._credentials.get(user_id)
        if credential is not None:
            return credential
        if await self._credentials.revocation_reason(user_id) is not None:
            raise ReconnectRequired("The device connection was revoked; please reconnect")
        raise NotConnected(f"No {self._adapter.DISPLAY_NAME} connection for this user")

    async def ensure_valid_token(self, user_id: str) -> str:
        """Return an access token valid for at least the safety margin.

        Raises:
            NotConnected:        No credential for the user.
            ReconnectRequired:   The provider rejected the refresh (now or on an
                                 earlier call); credential deleted.
            RateLimited:         The token endpoint throttled us; credential kept.
            ProviderUnavailable: Refresh failed transiently; credential kept.
        """
        credential = await self.require_credential(user_id)
        if not credential.expires_within(self._refresh_margin, self._clock()):
            return credential.access_token
        return await self._refreshes.do(user_id, lambda: self._refresh(user_id))

    async def _refresh(self, user_id: str) -> str:
        # another flight may have refreshed between our read and this one
        credential = await self.require_credential(user_id)
        if not credential.expires_within(self._refresh_margin, self._clock()):
            return credential.access_token

        try:
            tokens = await self._adapter.refresh_token(credential.refresh_token)
        except ProviderRejected as exc:
            logger.warning("Refresh rejected for user %s: %s", user_id, exc)
            await self.revoke(user_id, reason="refresh_rejected")
            raise ReconnectRequired("The device connection was revoked; please reconnect") from exc

        updated = await self._credentials.update_tokens(user_id, tokens)
        if updated is None:
            raise NotConnected(f"No {self._adapter.DISPLAY_NAME} connection for this user")
        await self._audit.record(
            AuditEvent.TOKEN_REFRESHED, user_id, expires_at=updated.expires_at.isoformat()
        )
        logger.info("Refreshed %s token for user %s", self._adapter.SOURCE_ID, user_id)
        return updated.access_token

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke(self, user_id: str, reason: str) -> bool:
        """Delete a credential the provider rejected.

        Until the user authorizes again, ``ensure_valid_token`` answers
        ``ReconnectRequired`` rather than ``NotConnected``.
        """
        deleted = await self._credentials.delete(user_id)
        await self._credentials.mark_revoked(user_id, reason)
        if deleted:
            await self._audit.record(AuditEvent.CREDENTIAL_DELETED, user_id, reason=reason)
        return deleted

    async def disconnect(self, user_id: str, reason: str) -> bool:
        """Delete the user's credential.  Returns True if one existed."""
        deleted = await self._credentials.delete(user_id)
        await self._credentials.clear_revoked(user_id)
        if deleted:
            await self._audit.record(AuditEvent.CREDENTIAL_DELETED, user_id, reason=reason)
        return deleted

    async def force_relink(self, user_id: str) -> str:
        """Drop any existing credential and start a fresh authorization."""
        await self.disconnect(user_id, reason="force_relink")
        return await self.begin_authorization(user_id)
