"""Base classes and canonical data models for the CareLink vitals integration.

Device-cloud adapters subclass ``DeviceCloudAdapter`` and speak in the
canonical types defined here.  ``MeasurementRecord`` and
``LiveVitalsSnapshot`` are the single source of truth consumed by the
measurement store, the live vitals cache and the API layer.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

logger = logging.getLogger("carelink.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after a code exchange or refresh.

    Attributes:
        access_token:     Bearer token for API calls.
        refresh_token:    Long-lived token used to obtain a new access_token.
        expires_at:       UTC datetime when the access_token expires.
        provider_user_id: The provider's identifier for the account owner.
        scope:            Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime
    provider_user_id: str | None = None
    scope: list[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"OAuthTokens(provider_user_id={self.provider_user_id!r}, "
            f"expires_at={self.expires_at.isoformat()}, scope={self.scope!r})"
        )


@dataclass
class OAuthCredential:
    """Persisted credential linking an internal user to a provider account.

    At most one live credential exists per (user_id, provider).  The token
    fields are secrets and never leave the server.

    Attributes:
        user_id:          Internal CareLink user id.
        provider:         Provider slug (``"withings"``).
        provider_user_id: Provider-side account id (webhooks address users by it).
        access_token:     Current bearer token.
        refresh_token:    Current refresh token.
        expires_at:       Absolute UTC expiry of ``access_token``.
        scope:            Granted scopes.
        last_synced_at:   Completion time of the last fully successful sync.
    """

    user_id: str
    provider: str
    provider_user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: list[str] = field(default_factory=list)
    last_synced_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def expires_within(self, margin_seconds: int, now: datetime | None = None) -> bool:
        """Return True if the access token is expired or expires within the margin."""
        current = now or utc_now()
        return (self.expires_at - current).total_seconds() <= margin_seconds

    def __repr__(self) -> str:
        return (
            f"OAuthCredential(user_id={self.user_id!r}, provider={self.provider!r}, "
            f"provider_user_id={self.provider_user_id!r}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


# ---------------------------------------------------------------------------
# Canonical measurement models
# ---------------------------------------------------------------------------


class MeasurementKind(str, enum.Enum):
    BLOOD_PRESSURE = "blood_pressure"
    HEART_RATE = "heart_rate"
    TEMPERATURE = "temperature"
    SPO2 = "spo2"
    WEIGHT = "weight"


# Every canonical value field; one nullable numeric column each in storage
VALUE_FIELDS: tuple[str, ...] = (
    "systolic",
    "diastolic",
    "heart_rate",
    "temperature",
    "spo2",
    "weight",
)


@dataclass
class MeasurementRecord:
    """Canonical reading derived from one provider measurement group.

    Identity is (provider_group_id, kind): a group containing blood pressure
    and a temperature yields two records sharing the same group id.

    Attributes:
        provider_group_id: Provider measurement-group id (idempotency key).
        user_id:           Internal CareLink user id.
        kind:              Canonical measurement kind.
        values:            Decoded numeric values keyed by field
                           (``systolic``, ``diastolic``, ``heart_rate``,
                           ``temperature``, ``spo2``, ``weight``).
        captured_at:       UTC capture time reported by the device.
        device_id:         Provider device id, if reported.
        device_model:      Provider device model, if reported.
    """

    provider_group_id: str
    user_id: str
    kind: MeasurementKind
    values: dict[str, Decimal]
    captured_at: datetime
    device_id: str | None = None
    device_model: str | None = None

    @property
    def device_class(self) -> str:
        """Live-cache key for this reading."""
        return self.kind.value


@dataclass
class LiveVitalsSnapshot:
    """The most recently captured reading for one (user, device class)."""

    user_id: str
    device_class: str
    values: dict[str, Decimal]
    captured_at: datetime
    provider_group_id: str | None = None
    device_model: str | None = None
    updated_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Abstract adapter
# ---------------------------------------------------------------------------


class DeviceCloudAdapter(ABC):
    """Abstract base class for device-cloud API clients.

    Adapters are stateless with respect to users: every call receives the
    token it needs and returns canonical types or raises an
    ``IntegrationError`` subclass from ``src.wearables.errors``.

    Subclasses must set:
        SOURCE_ID:    Provider slug (e.g. ``"withings"``).
        DISPLAY_NAME: Human-readable provider name.
    """

    SOURCE_ID: str = ""
    DISPLAY_NAME: str = ""

    @abstractmethod
    def build_authorization_url(self, state: str) -> str:
        """Return the provider consent URL carrying the opaque ``state``.

        Raises:
            ConfigurationError: If client id or redirect URI is missing.
        """

    @abstractmethod
    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange a one-time authorization code for tokens.

        Args:
            code: Authorization code from the OAuth2 callback.

        Returns:
            OAuthTokens including the provider user id.

        Raises:
            ProviderRejected:    The provider refused the code.
            ProviderUnavailable: Transport failure, timeout or 5xx.
        """

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new token pair using a refresh token.

        Raises:
            ProviderRejected:    The refresh token was refused.
            ProviderUnavailable: Transport failure, timeout or 5xx.
        """

    @abstractmethod
    async def fetch_measure_groups(
        self,
        access_token: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[dict]:
        """Fetch raw measurement groups captured or updated in a time window.

        Raises:
            InvalidAccessToken:  The provider rejected the access token.
            RateLimited:         The provider throttled the call.
            ProviderError:       Any other non-zero provider status.
            ProviderUnavailable: Transport failure, timeout or 5xx.
        """

    @abstractmethod
    async def subscribe_notifications(self, access_token: str, callback_url: str) -> bool:
        """Register ``callback_url`` for push notifications.

        Returns:
            True if a new subscription was created, False if one already existed.
        """

    # ------------------------------------------------------------------
    # Shared helpers for all adapters
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _from_epoch(value: object) -> datetime | None:
        """Convert a unix timestamp to an aware UTC datetime; None if unusable or out of range."""
        seconds = DeviceCloudAdapter._safe_int(value)
        if seconds is None:
            return None
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
