"""Error taxonomy for the Withings integration.

Every failure the pipeline can surface to a caller is an ``IntegrationError``
subclass carrying a stable machine-readable ``code``, the HTTP status the API
layer should answer with, and the client flags (``needsConnection``,
``needsReconnect``, ``rateLimited``) the patient app keys its UI on.

``InvalidAccessToken`` and ``ProviderRejected`` are internal signals raised by
the provider client; the token manager and sync orchestrator translate them
into ``ReconnectRequired`` / ``TokenExchangeFailed`` after cleaning up.
"""

from __future__ import annotations

from typing import Any


class IntegrationError(Exception):
    """Base class for all integration failures."""

    code: str = "integration_error"
    status_code: int = 500
    flags: dict[str, bool] = {}

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON body the API answers with for this error."""
        return {"error": self.code, "detail": self.message, **self.flags}


class ConfigurationError(IntegrationError):
    """A required setting (client id, secret, redirect URI) is missing."""

    code = "configuration_error"
    status_code = 500


class NotConnected(IntegrationError):
    code = "not_connected"
    status_code = 404
    flags = {"needsConnection": True}


class NoReadings(IntegrationError):
    """Connected, but nothing of the requested class has been captured yet."""

    code = "no_readings"
    status_code = 404
    flags = {"needsConnection": False}


class ReconnectRequired(IntegrationError):
    """The stored credential was revoked or rejected and has been deleted."""

    code = "reconnect_required"
    status_code = 409
    flags = {"needsReconnect": True}


class RateLimited(IntegrationError):
    code = "rate_limited"
    status_code = 429
    flags = {"rateLimited": True}


class ProviderUnavailable(IntegrationError):
    """Transport failure, timeout or 5xx from the provider. Retryable."""

    code = "provider_unavailable"
    status_code = 503


class ProviderError(IntegrationError):
    """The provider answered with a non-zero status we do not classify."""

    code = "provider_error"
    status_code = 502

    def __init__(self, message: str | None = None, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class InvalidAccessToken(ProviderError):
    """The provider rejected the access token on a data call."""

    code = "invalid_access_token"


class ProviderRejected(ProviderError):
    """The token endpoint refused a code exchange or refresh."""

    code = "provider_rejected"


class InvalidState(IntegrationError):
    """OAuth state is unknown, expired, or bound to another user."""

    code = "invalid_state"
    status_code = 400


class TokenExchangeFailed(IntegrationError):
    code = "token_exchange_failed"
    status_code = 400
    flags = {"needsReconnect": True}


class SyncTimedOut(IntegrationError):
    code = "sync_timed_out"
    status_code = 504


class PartialFailure(IntegrationError):
    """Some measurement groups of a sync batch could not be persisted."""

    code = "partial_failure"
    status_code = 207

    def __init__(
        self,
        succeeded: list[str],
        failed: list[str],
        records_ingested: int = 0,
    ) -> None:
        super().__init__(
            f"{len(failed)} of {len(succeeded) + len(failed)} measurement groups failed to persist"
        )
        self.succeeded = succeeded
        self.failed = failed
        self.records_ingested = records_ingested

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "succeededGroups": self.succeeded,
            "failedGroups": self.failed,
            "recordsIngested": self.records_ingested,
        }
