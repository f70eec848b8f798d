"""Withings Health API adapter.

Stateless client for the Withings device cloud: authorization URL
construction, code exchange, token refresh, measurement retrieval and
notification subscription.  Every call receives the token it needs; the
adapter never reads or writes the credential store.

Configuration:
    WITHINGS_CLIENT_ID      — OAuth2 client ID (no default)
    WITHINGS_CLIENT_SECRET  — OAuth2 client secret (no default)
    WITHINGS_REDIRECT_URI   — OAuth2 callback registered with Withings

Endpoints used (URLs from withings_config.yaml):
    account.withings.com/oauth2_user/authorize2  — Consent screen
    wbsapi.withings.net/v2/oauth2                — requesttoken (code + refresh)
    wbsapi.withings.net/measure                  — getmeas
    wbsapi.withings.net/notify                   — subscribe

Withings answers HTTP 200 for most failures and puts the real outcome in
the body ``status`` field; see ``_classify_status``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from src.wearables.base import DeviceCloudAdapter, OAuthTokens, utc_now
from src.wearables.config_loader import ProviderConfig, get_provider_config
from src.wearables.errors import (
    ConfigurationError,
    InvalidAccessToken,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RateLimited,
)

logger = logging.getLogger("carelink.wearables.withings")


class WithingsAdapter(DeviceCloudAdapter):
    """Withings Health API adapter.

    Supports:
    - OAuth2 authorization code flow with the ``requesttoken`` action
    - Refresh-token rotation (Withings issues a new refresh token each time)
    - Paginated ``getmeas`` retrieval by last-update time or capture window
    - Push notification subscription
    """

    SOURCE_ID = "withings"
    DISPLAY_NAME = "Withings"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        config: ProviderConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the Withings adapter.

        Args:
            client_id:     OAuth2 client ID.
            client_secret: OAuth2 client secret.
            redirect_uri:  Callback URL registered with Withings.
            config:        Provider constants (defaults to withings_config.yaml).
            http_client:   Optional shared httpx client (pooled in production,
                           mocked in tests).
            timeout:       Per-request timeout in seconds.
            clock:         Returns the current UTC time; used for token expiry.
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._config = config or get_provider_config()
        self._http_client = http_client
        self._timeout = timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # OAuth2
    # ------------------------------------------------------------------

    def _require_credentials(self, need_secret: bool = True) -> None:
        missing = []
        if not self._client_id:
            missing.append("WITHINGS_CLIENT_ID")
        if need_secret and not self._client_secret:
            missing.append("WITHINGS_CLIENT_SECRET")
        if not self._redirect_uri:
            missing.append("WITHINGS_REDIRECT_URI")
        if missing:
            raise ConfigurationError(f"Withings is not configured: missing {', '.join(missing)}")

    def build_authorization_url(self, state: str) -> str:
        self._require_credentials()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self._client_id,
                "redirect_uri": self._redirect_uri,
                "scope": ",".join(self._config.scopes),
                "state": state,
            }
        )
        return f"{self._config.endpoints.authorize_url}?{query}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for an access + refresh token pair."""
        self._require_credentials()
        logger.info("Withings: exchanging authorization code")
        return await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri,
            }
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh an access token.  The returned refresh token replaces the old one."""
        self._require_credentials()
        logger.info("Withings: refreshing access token")
        return await self._request_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def _request_token(self, grant: dict[str, Any]) -> OAuthTokens:
        data = {
            "action": "requesttoken",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            **grant,
        }
        response = await self._post(self._config.endpoints.token_url, data)
        if response.status_code >= 400:
            raise ProviderRejected(
                f"Withings token endpoint answered HTTP {response.status_code}"
            )

        payload = self._json(response)
        status = payload.get("status")
        if status in self._config.status_codes.rate_limited:
            raise RateLimited("Withings token endpoint rate limited the request")
        if status != 0:
            raise ProviderRejected(
                f"Withings token endpoint rejected the grant (status={status})"
            )

        body = payload.get("body") or {}
        try:
            access_token = body["access_token"]
            refresh_token = body["refresh_token"]
            expires_in = int(body.get("expires_in", 10800))
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError("Withings token response is missing required fields") from exc

        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            provider_user_id=str(body["userid"]) if body.get("userid") is not None else None,
            scope=[s for s in str(body.get("scope", "")).split(",") if s],
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def fetch_measure_groups(
        self,
        access_token: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[dict]:
        """Fetch every measurement group in the window, following pagination.

        With ``until`` the window is a capture-time range (``startdate`` /
        ``enddate``, as announced by a webhook).  Without it the query is by
        ``lastupdate`` so late-arriving and edited groups are included.
        """
        params: dict[str, Any] = {
            "action": "getmeas",
            "meastypes": self._config.meastypes_param,
            "category": self._config.sync.category,
        }
        if until is not None:
            params["startdate"] = int(since.timestamp())
            params["enddate"] = int(until.timestamp())
        else:
            params["lastupdate"] = int(since.timestamp())

        groups: list[dict] = []
        for page in range(self._config.sync.max_pages):
            body = await self._api_call(self._config.endpoints.measure_url, params, access_token)
            groups.extend(body.get("measuregrps") or [])
            if not body.get("more"):
                break
            params["offset"] = body.get("offset", 0)
            logger.debug("Withings: fetching getmeas page %d (offset=%s)", page + 2, params["offset"])
        else:
            logger.warning(
                "Withings: stopped paginating getmeas after %d pages", self._config.sync.max_pages
            )

        logger.info("Withings: fetched %d measurement groups", len(groups))
        return groups

    async def subscribe_notifications(self, access_token: str, callback_url: str) -> bool:
        """Subscribe ``callback_url`` to every configured notification category.

        Returns:
            True if at least one new subscription was created, False if all
            already existed.
        """
        created = False
        for appli in self._config.notify_appli:
            try:
                await self._api_call(
                    self._config.endpoints.notify_url,
                    {"action": "subscribe", "callbackurl": callback_url, "appli": appli},
                    access_token,
                )
                created = True
                logger.info("Withings: subscribed appli=%d notifications", appli)
            except ProviderError as exc:
                if exc.provider_status in self._config.status_codes.already_subscribed:
                    logger.info("Withings: appli=%d notifications already subscribed", appli)
                    continue
                raise
        return created

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    async def _api_call(self, url: str, data: dict[str, Any], access_token: str) -> dict:
        """POST an authenticated data-API action and return the response ``body``."""
        response = await self._post(url, data, access_token=access_token)
        if response.status_code == 401:
            raise InvalidAccessToken("Withings rejected the access token (HTTP 401)")
        if response.status_code >= 400:
            raise ProviderError(f"Withings answered HTTP {response.status_code}")

        payload = self._json(response)
        self._classify_status(payload.get("status"), payload.get("error"))
        return payload.get("body") or {}

    def _classify_status(self, status: Any, error: Any = None) -> None:
        """Raise the error matching a non-zero Withings body status."""
        if status == 0:
            return
        codes = self._config.status_codes
        if status in codes.invalid_token:
            raise InvalidAccessToken(
                f"Withings rejected the access token (status={status})", provider_status=status
            )
        if status in codes.rate_limited:
            raise RateLimited(f"Withings rate limited the request (status={status})")
        raise ProviderError(
            f"Withings returned status={status}: {error or 'unknown error'}",
            provider_status=status if isinstance(status, int) else None,
        )

    async def _post(
        self,
        url: str,
        data: dict[str, Any],
        access_token: str | None = None,
    ) -> httpx.Response:
        """Send a form-encoded POST.

        Transport failures, timeouts, 408 and 5xx raise ``ProviderUnavailable``;
        429 raises ``RateLimited``.  Neither may cost the caller its credential.
        """
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        try:
            if self._http_client:
                response = await self._http_client.post(
                    url, data=data, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, data=data, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"Withings request timed out: {url}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"Withings unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 408:
            raise ProviderUnavailable(f"Withings answered HTTP {response.status_code}")
        if response.status_code == 429:
            raise RateLimited("Withings rate limited the request (HTTP 429)")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Withings returned a non-JSON response") from exc
        if not isinstance(payload, dict):
            raise ProviderError("Withings returned an unexpected response shape")
        return payload
