"""
Pure extraction of a UnitSnapshot from VRM diagnostic records.

VRM returns a flat list of ``{code, rawValue, Device}`` rows per installation.
Each snapshot field is read from a primary code with an optional fallback
code. Empty or non-numeric values are treated as absent (None), never zero.

Rows from the ``Gateway`` device are ignored for electrical readings (the
gateway echoes some codes with its own units) but used for GPS.

CHANGELOG:
- 2026-03-03: Add GPS codes (STORY-108)
- 2026-03-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import datetime
import logging
import math
from collections.abc import Sequence

from fleet.src.models import DiagnosticRecord, UnitInfo, UnitSnapshot

logger = logging.getLogger(__name__)

GATEWAY_DEVICE = "Gateway"

_NUMERIC_FIELDS: dict[str, tuple[str, ...]] = {
    "battery_soc": ("SOC", "bs"),
    "battery_voltage": ("V", "bv"),
    "battery_current": ("I", "bc"),
    "battery_temp": ("BT", "bT"),
    "battery_power": ("P", "Pdc"),
    "solar_watts": ("ScW", "Pdc"),
    "solar_yield_today": ("YT",),
    "solar_yield_yesterday": ("YY",),
    "consumed_ah": ("CE",),
}
"""Maps UnitSnapshot field -> diagnostic codes in priority order."""

_GPS_FIELDS: dict[str, str] = {"latitude": "lt", "longitude": "lg"}


def parse_diagnostic(raw: dict) -> DiagnosticRecord:
    """Build a :class:`DiagnosticRecord` from one VRM JSON row."""
    return DiagnosticRecord(
        code=str(raw.get("code", "")),
        raw_value=raw.get("rawValue"),
        device=raw.get("Device"),
    )


def _to_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def find_value(
    records: Sequence[DiagnosticRecord],
    code: str,
    *,
    include_gateway: bool = False,
) -> object | None:
    """Return the raw value of the first record with *code*, or None."""
    for record in records:
        if record.code != code:
            continue
        if record.device == GATEWAY_DEVICE and not include_gateway:
            continue
        if record.raw_value is None or record.raw_value == "":
            return None
        return record.raw_value
    return None


def find_number(
    records: Sequence[DiagnosticRecord],
    *codes: str,
    include_gateway: bool = False,
) -> float | None:
    """Return the first parseable number among *codes*, in order."""
    for code in codes:
        number = _to_float(find_value(records, code, include_gateway=include_gateway))
        if number is not None:
            return number
    return None


def extract_snapshot(
    unit: UnitInfo,
    records: Sequence[DiagnosticRecord],
    captured_at: datetime.datetime,
) -> UnitSnapshot:
    """Map VRM diagnostic records to a :class:`UnitSnapshot`.

    Args:
        unit: The installation the records belong to.
        records: Parsed diagnostic rows.
        captured_at: Capture timestamp injected by the caller.
    """
    values: dict[str, float | None] = {
        field: find_number(records, *codes) for field, codes in _NUMERIC_FIELDS.items()
    }
    for field, code in _GPS_FIELDS.items():
        values[field] = find_number(records, code, include_gateway=True)

    lat, lon = values["latitude"], values["longitude"]
    if lat is None or lon is None or not (-90 <= lat <= 90 and -180 <= lon <= 180):
        values["latitude"] = values["longitude"] = None

    charge_state = find_value(records, "ScS")
    return UnitSnapshot(
        unit_id=unit.unit_id,
        unit_name=unit.name,
        captured_at=captured_at,
        charge_state=str(charge_state) if charge_state is not None else None,
        **values,
    )
