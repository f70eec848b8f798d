"""Turn Withings measurement groups into canonical MeasurementRecords.

A Withings group is one capture event on one device::

    {
        "grpid": 5213874612,
        "date": 1771840800,
        "deviceid": "a1b2...",
        "model": "BPM Connect",
        "measures": [
            {"type": 10, "value": 1205, "unit": -1},   # systolic 120.5
            {"type": 9,  "value": 78,   "unit": 0},    # diastolic 78
            {"type": 11, "value": 64,   "unit": 0},    # heart rate 64
        ],
    }

Each measure is ``value × 10^unit``.  Decoding is exact (``Decimal``) and
rounding is half-up to the precision configured per field, so 120.5 mmHg
becomes 121 and 120.4 becomes 120.

Grouping rules:
    - systolic / diastolic, plus a heart rate captured with them, form one
      ``blood_pressure`` record
    - a heart rate without blood pressure is a ``heart_rate`` record
    - temperature, spo2 and weight are records of their own kind
    - measure types not in the configured table are dropped

Everything here is pure: no I/O, no clock, no side effects.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from src.wearables.base import DeviceCloudAdapter, MeasurementKind, MeasurementRecord
from src.wearables.config_loader import ProviderConfig, get_provider_config

logger = logging.getLogger("carelink.wearables.normalizer")

_BLOOD_PRESSURE_FIELDS = ("systolic", "diastolic")

# Fields that become a record of their own kind
_STANDALONE_KINDS: dict[str, MeasurementKind] = {
    "temperature": MeasurementKind.TEMPERATURE,
    "spo2": MeasurementKind.SPO2,
    "weight": MeasurementKind.WEIGHT,
}


def decode_value(mantissa: int, exponent: int, places: int) -> Decimal:
    """Decode ``mantissa × 10^exponent`` and round half-up to ``places`` decimals.

    >>> decode_value(1205, -1, 0)
    Decimal('121')
    >>> decode_value(3685, -2, 2)
    Decimal('36.85')
    """
    exact = Decimal(mantissa).scaleb(exponent)
    return exact.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


class MeasurementNormalizer:
    """Pure mapper from provider measurement groups to canonical records."""

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self._config = config or get_provider_config()

    def decode_measures(self, measures: list[dict]) -> dict[str, Decimal]:
        """Decode a group's measure list into ``{canonical field: value}``.

        Unknown type codes and unparseable entries are skipped.  If a field
        appears twice the first occurrence wins.
        """
        values: dict[str, Decimal] = {}
        for measure in measures or []:
            type_code = DeviceCloudAdapter._safe_int(measure.get("type"))
            field_name = self._config.field_for(type_code) if type_code is not None else None
            if field_name is None:
                logger.debug("Dropping unmapped measure type %r", measure.get("type"))
                continue
            if field_name in values:
                continue
            try:
                values[field_name] = decode_value(
                    int(measure["value"]),
                    int(measure.get("unit", 0)),
                    self._config.precision_for(field_name),
                )
            except (KeyError, TypeError, ValueError, InvalidOperation):
                logger.warning("Skipping malformed measure %r", measure)
        return values

    def normalize(self, group: dict, user_id: str) -> list[MeasurementRecord]:
        """Map one measurement group to zero or more canonical records.

        Args:
            group:   Raw provider measurement group.
            user_id: Internal CareLink user id the group belongs to.

        Returns:
            One record per kind present in the group; empty if the group has
            no group id, no capture date, or no recognised measures.
        """
        group_id = group.get("grpid")
        captured_at = DeviceCloudAdapter._from_epoch(group.get("date"))
        if group_id is None or captured_at is None:
            logger.warning(
                "Skipping measurement group without grpid/date for user %s", user_id
            )
            return []

        values = self.decode_measures(group.get("measures", []))
        if not values:
            return []

        device_id = group.get("deviceid")
        device_model = group.get("model")

        def _record(kind: MeasurementKind, kind_values: dict[str, Decimal]) -> MeasurementRecord:
            return MeasurementRecord(
                provider_group_id=str(group_id),
                user_id=user_id,
                kind=kind,
                values=kind_values,
                captured_at=captured_at,
                device_id=str(device_id) if device_id is not None else None,
                device_model=str(device_model) if device_model is not None else None,
            )

        records: list[MeasurementRecord] = []

        bp_values = {f: values[f] for f in _BLOOD_PRESSURE_FIELDS if f in values}
        if bp_values:
            if "heart_rate" in values:
                bp_values["heart_rate"] = values["heart_rate"]
            records.append(_record(MeasurementKind.BLOOD_PRESSURE, bp_values))
        elif "heart_rate" in values:
            records.append(
                _record(MeasurementKind.HEART_RATE, {"heart_rate": values["heart_rate"]})
            )

        for field_name, kind in _STANDALONE_KINDS.items():
            if field_name in values:
                records.append(_record(kind, {field_name: values[field_name]}))

        return records

    def normalize_many(self, groups: list[dict], user_id: str) -> list[MeasurementRecord]:
        records: list[MeasurementRecord] = []
        for group in groups:
            records.extend(self.normalize(group, user_id))
        return records
