"""Load, validate, and hot-reload the Withings provider configuration.

The config lives in ``withings_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_provider_config()`` to re-read from
disk after an operator update; no restart required.

Usage::

    from src.wearables.config_loader import get_provider_config

    config = get_provider_config()
    config.field_for(10)            # "systolic"
    config.precision_for("weight")  # 2
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("carelink.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "withings_config.yaml"

# Canonical fields the normalizer knows how to group into records
KNOWN_FIELDS: frozenset[str] = frozenset(
    {"systolic", "diastolic", "heart_rate", "temperature", "spo2", "weight"}
)


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class EndpointConfig:
    authorize_url: str
    token_url: str
    measure_url: str
    notify_url: str


@dataclass
class StatusCodeConfig:
    """Provider body ``status`` values with special handling."""

    invalid_token: frozenset[int]
    rate_limited: frozenset[int]
    already_subscribed: frozenset[int]


@dataclass
class SyncConfig:
    lookback_days: int
    category: int
    max_pages: int


@dataclass
class ProviderConfig:
    """Complete, validated provider configuration.

    This is the single in-memory representation of withings_config.yaml.
    The adapter, normalizer and orchestrator all read from this object.

    Attributes:
        version:       Config schema version string.
        provider:      Provider slug.
        endpoints:     OAuth and data endpoint URLs.
        scopes:        OAuth scopes requested at authorization.
        measure_types: Provider measure type code → canonical field.
        precision:     Canonical field → decimal places after rounding.
        status_codes:  Classified provider status values.
        notify_appli:  Notification categories to subscribe to.
        sync:          Pull-sync settings.
    """

    version: str
    provider: str
    endpoints: EndpointConfig
    scopes: list[str]
    measure_types: dict[int, str]
    precision: dict[str, int]
    status_codes: StatusCodeConfig
    notify_appli: list[int]
    sync: SyncConfig
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def field_for(self, type_code: int) -> str | None:
        """Return the canonical field for a provider measure type, or None if unmapped."""
        return self.measure_types.get(type_code)

    def precision_for(self, field_name: str) -> int:
        """Return the decimal places kept for a canonical field (0 if unconfigured)."""
        return self.precision.get(field_name, 0)

    @property
    def meastypes_param(self) -> str:
        """Comma-separated measure types for the ``getmeas`` query."""
        return ",".join(str(code) for code in sorted(self.measure_types))


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when withings_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Provider config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _int_set(raw: Any, key: str, errors: list[str]) -> frozenset[int]:
    try:
        return frozenset(int(v) for v in (raw or []))
    except (TypeError, ValueError):
        errors.append(f"status_codes.{key} must be a list of integers, got {raw!r}")
        return frozenset()


def _validate_and_build(raw: dict) -> ProviderConfig:
    """Validate the raw YAML dict and construct a ProviderConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))
    provider = raw.get("provider", "withings")

    # ── Endpoints ──
    ep_raw = raw.get("endpoints") or {}
    for key in ("authorize_url", "token_url", "measure_url", "notify_url"):
        if not ep_raw.get(key):
            errors.append(f"Missing required key '{key}' in section 'endpoints'")
    endpoints = EndpointConfig(
        authorize_url=ep_raw.get("authorize_url", ""),
        token_url=ep_raw.get("token_url", ""),
        measure_url=ep_raw.get("measure_url", ""),
        notify_url=ep_raw.get("notify_url", ""),
    )

    scopes = [str(s) for s in (raw.get("scopes") or [])]
    if not scopes:
        errors.append("'scopes' section is missing or empty")

    # ── Measure types ──
    mt_raw = raw.get("measure_types") or {}
    if not mt_raw:
        errors.append("'measure_types' section is missing or empty")
    measure_types: dict[int, str] = {}
    for code, field_name in mt_raw.items():
        try:
            type_code = int(code)
        except (TypeError, ValueError):
            errors.append(f"measure_types key {code!r} must be an integer type code")
            continue
        if field_name not in KNOWN_FIELDS:
            errors.append(
                f"measure_types.{code} = {field_name!r} is not one of {sorted(KNOWN_FIELDS)}"
            )
            continue
        measure_types[type_code] = field_name

    # ── Precision ──
    precision: dict[str, int] = {}
    for field_name, places in (raw.get("precision") or {}).items():
        try:
            p = int(places)
        except (TypeError, ValueError):
            errors.append(f"precision.{field_name} must be an integer, got {places!r}")
            continue
        if p < 0:
            errors.append(f"precision.{field_name} = {p} must not be negative")
        precision[field_name] = p

    # ── Status codes ──
    sc_raw = raw.get("status_codes") or {}
    status_codes = StatusCodeConfig(
        invalid_token=_int_set(sc_raw.get("invalid_token"), "invalid_token", errors),
        rate_limited=_int_set(sc_raw.get("rate_limited", [601]), "rate_limited", errors),
        already_subscribed=_int_set(
            sc_raw.get("already_subscribed", [293]), "already_subscribed", errors
        ),
    )
    if not status_codes.invalid_token:
        errors.append("status_codes.invalid_token is missing or empty")

    notify_appli = [int(a) for a in (raw.get("notify_appli") or [1])]

    # ── Sync ──
    sync_raw = raw.get("sync") or {}
    sync = SyncConfig(
        lookback_days=int(sync_raw.get("lookback_days", 30)),
        category=int(sync_raw.get("category", 1)),
        max_pages=int(sync_raw.get("max_pages", 20)),
    )
    if sync.lookback_days <= 0:
        errors.append(f"sync.lookback_days = {sync.lookback_days} must be positive")

    if errors:
        raise ConfigValidationError(
            f"withings_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ProviderConfig(
        version=version,
        provider=provider,
        endpoints=endpoints,
        scopes=scopes,
        measure_types=measure_types,
        precision=precision,
        status_codes=status_codes,
        notify_appli=notify_appli,
        sync=sync,
        _raw=raw,
    )


def load_provider_config(path: Path | None = None) -> ProviderConfig:
    """Load and validate the provider config from disk.

    Args:
        path: Override path to YAML. Uses the bundled withings_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded %s provider config v%s from %s", config.provider, config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: ProviderConfig | None = None
_config_lock = threading.Lock()


def get_provider_config() -> ProviderConfig:
    """Return the global ProviderConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_provider_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_provider_config()
    return _config


def reload_provider_config(path: Path | None = None) -> ProviderConfig:
    """Reload the provider config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_provider_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded provider config: %s → %s", old_version, new_config.version)
    return new_config
