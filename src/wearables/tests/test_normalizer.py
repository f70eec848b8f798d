"""Tests for the measurement normalizer: unit decoding, rounding, grouping."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.wearables.base import MeasurementKind
from src.wearables.config_loader import ProviderConfig
from src.wearables.normalizer import MeasurementNormalizer, decode_value
from src.wearables.tests.conftest import TEST_USER_ID


@pytest.fixture
def normalizer(provider_config: ProviderConfig) -> MeasurementNormalizer:
    return MeasurementNormalizer(provider_config)


def _group(measures: list[dict], grpid: int = 42, date: int = 1771840800) -> dict:
    return {"grpid": grpid, "date": date, "deviceid": "dev-1", "model": "BPM Core", "measures": measures}


# ---------------------------------------------------------------------------
# Value decoding
# ---------------------------------------------------------------------------


class TestDecodeValue:
    def test_half_rounds_up(self) -> None:
        assert decode_value(1205, -1, 0) == Decimal("121")

    def test_below_half_rounds_down(self) -> None:
        assert decode_value(1204, -1, 0) == Decimal("120")

    def test_positive_exponent(self) -> None:
        assert decode_value(12, 1, 0) == Decimal("120")

    def test_two_decimal_places_kept(self) -> None:
        assert decode_value(3685, -2, 2) == Decimal("36.85")

    def test_three_decimal_mantissa_rounded_to_two(self) -> None:
        # 72.455 kg → 72.46 (half-up, no banker's rounding)
        assert decode_value(72455, -3, 2) == Decimal("72.46")

    def test_exact_decimal_no_float_drift(self) -> None:
        # 0.1 * 3 style drift must not turn 36.65 into 36.64
        assert decode_value(36650, -3, 2) == Decimal("36.65")


# ---------------------------------------------------------------------------
# Grouping into records
# ---------------------------------------------------------------------------


class TestNormalizeBloodPressure:
    def test_bp_group_yields_single_record(
        self, normalizer: MeasurementNormalizer, bp_group: dict
    ) -> None:
        records = normalizer.normalize(bp_group, TEST_USER_ID)
        assert len(records) == 1
        record = records[0]
        assert record.kind == MeasurementKind.BLOOD_PRESSURE
        assert record.values == {
            "systolic": Decimal("121"),
            "diastolic": Decimal("78"),
            "heart_rate": Decimal("64"),
        }

    def test_bp_record_carries_identity_and_device(
        self, normalizer: MeasurementNormalizer, bp_group: dict
    ) -> None:
        record = normalizer.normalize(bp_group, TEST_USER_ID)[0]
        assert record.provider_group_id == "5213874001"
        assert record.user_id == TEST_USER_ID
        assert record.captured_at == datetime(2026, 2, 23, 10, 0, tzinfo=timezone.utc)
        assert record.device_id == "b7c1f2a9d0e34c5f"
        assert record.device_model == "BPM Connect"

    def test_systolic_rounds_down_below_half(self, normalizer: MeasurementNormalizer) -> None:
        group = _group(
            [
                {"type": 10, "value": 1204, "unit": -1},
                {"type": 9, "value": 80, "unit": 0},
            ]
        )
        record = normalizer.normalize(group, TEST_USER_ID)[0]
        assert record.values["systolic"] == Decimal("120")
        assert "heart_rate" not in record.values

    def test_heart_rate_alone_is_heart_rate_record(
        self, normalizer: MeasurementNormalizer, measure_groups: list[dict]
    ) -> None:
        records = normalizer.normalize(measure_groups[3], TEST_USER_ID)
        assert [r.kind for r in records] == [MeasurementKind.HEART_RATE]
        assert records[0].values == {"heart_rate": Decimal("71")}


class TestNormalizeOtherKinds:
    def test_temperature_two_decimals(
        self, normalizer: MeasurementNormalizer, measure_groups: list[dict]
    ) -> None:
        records = normalizer.normalize(measure_groups[1], TEST_USER_ID)
        assert len(records) == 1
        assert records[0].kind == MeasurementKind.TEMPERATURE
        assert records[0].values == {"temperature": Decimal("36.85")}

    def test_one_group_several_kinds_share_group_id(
        self, normalizer: MeasurementNormalizer, measure_groups: list[dict]
    ) -> None:
        records = normalizer.normalize(measure_groups[2], TEST_USER_ID)
        kinds = {r.kind for r in records}
        assert kinds == {MeasurementKind.WEIGHT, MeasurementKind.SPO2}
        assert {r.provider_group_id for r in records} == {"5213874003"}

    def test_weight_value(
        self, normalizer: MeasurementNormalizer, measure_groups: list[dict]
    ) -> None:
        records = normalizer.normalize(measure_groups[2], TEST_USER_ID)
        weight = next(r for r in records if r.kind == MeasurementKind.WEIGHT)
        assert weight.values["weight"] == Decimal("72.45")

    def test_whole_fixture_yields_five_records(
        self, normalizer: MeasurementNormalizer, measure_groups: list[dict]
    ) -> None:
        records = normalizer.normalize_many(measure_groups, TEST_USER_ID)
        assert len(records) == 5


class TestNormalizeEdgeCases:
    def test_unknown_codes_dropped(self, normalizer: MeasurementNormalizer) -> None:
        group = _group([{"type": 88, "value": 312, "unit": -2}, {"type": 6, "value": 1850, "unit": -2}])
        assert normalizer.normalize(group, TEST_USER_ID) == []

    def test_group_without_grpid_skipped(self, normalizer: MeasurementNormalizer) -> None:
        group = {"date": 1771840800, "measures": [{"type": 11, "value": 60, "unit": 0}]}
        assert normalizer.normalize(group, TEST_USER_ID) == []

    def test_group_without_date_skipped(self, normalizer: MeasurementNormalizer) -> None:
        group = {"grpid": 1, "measures": [{"type": 11, "value": 60, "unit": 0}]}
        assert normalizer.normalize(group, TEST_USER_ID) == []

    def test_malformed_measure_skipped_others_kept(
        self, normalizer: MeasurementNormalizer
    ) -> None:
        group = _group(
            [
                {"type": 54, "value": "n/a", "unit": 0},
                {"type": 11, "value": 58, "unit": 0},
            ]
        )
        records = normalizer.normalize(group, TEST_USER_ID)
        assert [r.kind for r in records] == [MeasurementKind.HEART_RATE]

    def test_pure_function_same_output(
        self, normalizer: MeasurementNormalizer, bp_group: dict
    ) -> None:
        assert normalizer.normalize(bp_group, TEST_USER_ID) == normalizer.normalize(
            bp_group, TEST_USER_ID
        )
