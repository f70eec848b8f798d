"""Tests for withings_config.yaml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.wearables.config_loader import (
    ConfigValidationError,
    ProviderConfig,
    _validate_and_build,
    get_provider_config,
    load_provider_config,
    reload_provider_config,
)


def _minimal_raw(**overrides: object) -> dict:
    raw = {
        "version": "1.0",
        "provider": "withings",
        "endpoints": {
            "authorize_url": "https://account.withings.com/oauth2_user/authorize2",
            "token_url": "https://wbsapi.withings.net/v2/oauth2",
            "measure_url": "https://wbsapi.withings.net/measure",
            "notify_url": "https://wbsapi.withings.net/notify",
        },
        "scopes": ["user.metrics"],
        "measure_types": {10: "systolic", 9: "diastolic"},
        "status_codes": {"invalid_token": [401]},
    }
    raw.update(overrides)
    return raw


class TestConfigLoading:
    """Tests for loading the bundled withings_config.yaml."""

    def test_load_default_config(self, provider_config: ProviderConfig) -> None:
        assert provider_config.version == "1.0"
        assert provider_config.provider == "withings"
        assert provider_config.scopes == ["user.metrics", "user.info"]

    def test_blood_pressure_codes_mapped(self, provider_config: ProviderConfig) -> None:
        assert provider_config.field_for(10) == "systolic"
        assert provider_config.field_for(9) == "diastolic"
        assert provider_config.field_for(11) == "heart_rate"

    def test_both_temperature_codes_map_to_temperature(
        self, provider_config: ProviderConfig
    ) -> None:
        assert provider_config.field_for(12) == "temperature"
        assert provider_config.field_for(73) == "temperature"

    def test_unmapped_code_returns_none(self, provider_config: ProviderConfig) -> None:
        """Fat mass (6) and pulse wave velocity (91) are not ingested."""
        assert provider_config.field_for(6) is None
        assert provider_config.field_for(91) is None

    def test_precision(self, provider_config: ProviderConfig) -> None:
        assert provider_config.precision_for("systolic") == 0
        assert provider_config.precision_for("temperature") == 2
        assert provider_config.precision_for("weight") == 2
        assert provider_config.precision_for("unknown") == 0

    def test_status_code_classes(self, provider_config: ProviderConfig) -> None:
        codes = provider_config.status_codes
        assert codes.invalid_token == frozenset({100, 101, 102, 200, 401})
        assert 601 in codes.rate_limited
        assert 293 in codes.already_subscribed

    def test_meastypes_param_sorted(self, provider_config: ProviderConfig) -> None:
        assert provider_config.meastypes_param == "1,9,10,11,12,54,73"

    def test_singleton_is_cached(self) -> None:
        assert get_provider_config() is get_provider_config()


class TestConfigValidation:
    """Tests for config validation logic."""

    def test_valid_minimal_config(self) -> None:
        config = _validate_and_build(_minimal_raw())
        assert config.measure_types == {10: "systolic", 9: "diastolic"}
        assert config.status_codes.rate_limited == frozenset({601})
        assert config.sync.lookback_days == 30

    def test_missing_endpoint_raises(self) -> None:
        raw = _minimal_raw(endpoints={"authorize_url": "https://example.test"})
        with pytest.raises(ConfigValidationError, match="token_url"):
            _validate_and_build(raw)

    def test_unknown_canonical_field_raises(self) -> None:
        raw = _minimal_raw(measure_types={10: "systolic", 6: "fat_mass"})
        with pytest.raises(ConfigValidationError, match="fat_mass"):
            _validate_and_build(raw)

    def test_non_integer_type_code_raises(self) -> None:
        raw = _minimal_raw(measure_types={"sys": "systolic"})
        with pytest.raises(ConfigValidationError, match="integer type code"):
            _validate_and_build(raw)

    def test_negative_precision_raises(self) -> None:
        raw = _minimal_raw(precision={"weight": -1})
        with pytest.raises(ConfigValidationError, match="negative"):
            _validate_and_build(raw)

    def test_missing_invalid_token_codes_raises(self) -> None:
        raw = _minimal_raw(status_codes={})
        with pytest.raises(ConfigValidationError, match="invalid_token"):
            _validate_and_build(raw)

    def test_errors_are_collected(self) -> None:
        raw = _minimal_raw(scopes=[], measure_types={})
        with pytest.raises(ConfigValidationError, match="2 validation error"):
            _validate_and_build(raw)

    def test_hot_reload(self, tmp_path: Path) -> None:
        """reload_provider_config() should replace the global singleton."""
        config_content = """
version: "2.0-test"
provider: withings
endpoints:
  authorize_url: https://account.withings.com/oauth2_user/authorize2
  token_url: https://wbsapi.withings.net/v2/oauth2
  measure_url: https://wbsapi.withings.net/measure
  notify_url: https://wbsapi.withings.net/notify
scopes: [user.metrics]
measure_types:
  10: systolic
  9: diastolic
status_codes:
  invalid_token: [401]
"""
        config_file = tmp_path / "withings_config.yaml"
        config_file.write_text(config_content.strip())

        try:
            new_config = reload_provider_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert get_provider_config() is new_config
        finally:
            reload_provider_config()

    def test_invalid_reload_keeps_old_config(self, tmp_path: Path) -> None:
        current = get_provider_config()
        config_file = tmp_path / "withings_config.yaml"
        config_file.write_text('version: "broken"\nscopes: []\n')

        with pytest.raises(ConfigValidationError):
            reload_provider_config(path=config_file)
        assert get_provider_config() is current

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_provider_config(path=Path("/nonexistent/path/config.yaml"))
