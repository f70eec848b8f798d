"""CareLink vitals-device integration.

This package links patients' Withings accounts, ingests their blood
pressure, heart rate, temperature, SpO2 and weight readings through
webhooks and scheduled polling, and keeps the latest reading per device
class available to clinicians.

Subpackages:
    adapters/ — Device-cloud API clients (Withings)
    stores/   — Credential, OAuth state, measurement and live-vitals persistence
    sync/     — Orchestrator, webhook receiver, poller, background supervisor

Core modules:
    base          — DeviceCloudAdapter ABC and canonical data models
    errors        — IntegrationError taxonomy
    config_loader — Load/validate/hot-reload withings_config.yaml
    normalizer    — Measurement group → canonical records
    tokens        — OAuth token lifecycle with single-flight refresh
    pipeline      — Wiring of the above for the API process
"""

from src.wearables.base import (
    DeviceCloudAdapter,
    LiveVitalsSnapshot,
    MeasurementKind,
    MeasurementRecord,
    OAuthCredential,
    OAuthTokens,
)
from src.wearables.config_loader import ProviderConfig, get_provider_config

__all__ = [
    "DeviceCloudAdapter",
    "LiveVitalsSnapshot",
    "MeasurementKind",
    "MeasurementRecord",
    "OAuthCredential",
    "OAuthTokens",
    "ProviderConfig",
    "get_provider_config",
]
