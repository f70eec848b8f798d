"""Pydantic response models for the Withings integration endpoints.

None of these models carries an access or refresh token.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.models.base import CareLinkBase


class AuthorizationUrlResponse(CareLinkBase):
    authorization_url: str


# ---------- Connection status ----------

class ConnectionStatusResponse(CareLinkBase):
    connected: bool
    needs_reconnect: bool = False
    provider: str = "withings"
    provider_user_id: str | None = None
    expires_at: datetime | None = None
    last_synced_at: datetime | None = None
    scope: list[str] = Field(default_factory=list)


class DisconnectResponse(CareLinkBase):
    disconnected: bool


class SubscribeResponse(CareLinkBase):
    subscribed: bool
    created: bool
    callback_url: str


# ---------- Vitals ----------

class LiveVitalsResponse(CareLinkBase):
    device_class: str
    captured_at: datetime
    updated_at: datetime
    systolic: float | None = None
    diastolic: float | None = None
    heart_rate: float | None = None
    temperature: float | None = None
    spo2: float | None = None
    weight: float | None = None
    device_model: str | None = None


class MeasurementResponse(CareLinkBase):
    provider_group_id: str
    kind: str
    captured_at: datetime
    systolic: float | None = None
    diastolic: float | None = None
    heart_rate: float | None = None
    temperature: float | None = None
    spo2: float | None = None
    weight: float | None = None
    device_id: str | None = None
    device_model: str | None = None


class MeasurementListResponse(CareLinkBase):
    items: list[MeasurementResponse]
    count: int


# ---------- Sync ----------

class SyncResponse(CareLinkBase):
    status: str = "success"
    groups_fetched: int
    records_seen: int
    records_ingested: int
    live_updates: list[str]
    window_start: datetime
    synced_at: datetime
