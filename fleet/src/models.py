"""
Pydantic models for fleet telemetry, identity, energy, and location records.

Every record that crosses a module seam (fetcher -> coordinator -> ledger ->
scorer -> API) is one of these models. Optional fields are ``None`` when the
upstream value was missing or unparseable; consumers must distinguish
"no data" from zero.

Unit ids are signed integers: positive ids come from the VRM (solar) fleet,
negative ids are synthesized for router-only trailers (``-router_id``).

CHANGELOG:
- 2026-03-09: Add IntelligenceReport sections (STORY-112)
- 2026-03-04: Add location cluster models (STORY-108)
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["caution", "warning", "critical"]
ScoreLabel = Literal["Excellent", "Good", "Fair", "Poor"]
TempStatus = Literal["critical", "warning", "cold", "normal"]
WeatherSource = Literal["open-meteo", "astronomical", "default"]


# ---------------------------------------------------------------------------
# Fleet A (VRM) records
# ---------------------------------------------------------------------------


class UnitInfo(BaseModel):
    """A VRM installation (one trailer) as listed by the user endpoint."""

    unit_id: int
    name: str


class DiagnosticRecord(BaseModel):
    """One VRM diagnostic row: a code, its raw value, and the source device."""

    code: str
    raw_value: str | float | int | None = None
    device: str | None = None


class UnitSnapshot(BaseModel):
    """Latest live reading for a trailer, overwritten every poll cycle.

    Attributes:
        unit_id: Signed unit id.
        unit_name: Display name from the VRM installation list.
        captured_at: Capture time (UTC).
        battery_soc: State of charge in percent (0-100).
        battery_voltage: Battery voltage in volts.
        battery_current: Battery current in amps.
        battery_temp: Battery temperature in degrees Celsius.
        battery_power: Battery power in watts.
        solar_watts: Instantaneous PV power in watts.
        solar_yield_today: Cumulative PV yield today in kWh.
        solar_yield_yesterday: PV yield yesterday in kWh.
        consumed_ah: Consumed amp-hours reported by the battery monitor.
        charge_state: Charge controller state text.
        latitude: GPS latitude if the installation reports one.
        longitude: GPS longitude if the installation reports one.
    """

    unit_id: int
    unit_name: str
    captured_at: datetime.datetime
    battery_soc: float | None = None
    battery_voltage: float | None = None
    battery_current: float | None = None
    battery_temp: float | None = None
    battery_power: float | None = None
    solar_watts: float | None = None
    solar_yield_today: float | None = None
    solar_yield_yesterday: float | None = None
    consumed_ah: float | None = None
    charge_state: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @property
    def timestamp_ms(self) -> int:
        """Capture time as milliseconds since the epoch."""
        return int(self.captured_at.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Fleet B (InControl2) records and identity
# ---------------------------------------------------------------------------


class RouterDevice(BaseModel):
    """A cellular router with connectivity status and optional GPS."""

    router_id: int
    name: str
    online: bool = False
    signal_bar: int | None = None
    rsrp: float | None = None
    rsrq: float | None = None
    sinr: float | None = None
    carrier: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class RouterBinding(BaseModel):
    """Persisted mapping from a router's external id to a unit id."""

    router_id: int
    unit_id: int
    router_name: str


class ResolvedIdentity(BaseModel):
    """Result of resolving a router to a unit."""

    unit_id: int
    display_name: str


class RouterStatus(BaseModel):
    """A router's latest status together with the unit it resolved to."""

    router: RouterDevice
    unit_id: int
    unit_name: str


# ---------------------------------------------------------------------------
# Energy ledger and alerts
# ---------------------------------------------------------------------------


class DailyEnergyRecord(BaseModel):
    """Per-unit, per-day energy accumulation."""

    unit_id: int
    date: datetime.date
    unit_name: str
    yield_wh: float | None = None
    consumed_wh: float | None = None
    updated_at: datetime.datetime


class DeficitDay(BaseModel):
    """One day of a deficit streak."""

    date: datetime.date
    yield_wh: float
    consumed_wh: float
    deficit_wh: float


class DeficitAlert(BaseModel):
    """Consecutive prior days where consumption exceeded yield."""

    unit_id: int
    unit_name: str
    streak_days: int
    severity: Severity
    deficit_days: list[DeficitDay]


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


class GpsUnit(BaseModel):
    """A unit with a known GPS position, as stored in the assignment table."""

    unit_id: int
    unit_name: str
    latitude: float
    longitude: float
    location_id: int | None = None
    manual_override: bool = False


class PersistedLocation(BaseModel):
    """A named job-site location held by the persistence layer."""

    id: int
    name: str
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None
    status: str = "active"


class LocationCluster(BaseModel):
    """Proximity-derived group of units, with its assigned location."""

    centroid_lat: float
    centroid_lng: float
    units: list[GpsUnit]
    location_id: int | None = None
    location_name: str | None = None
    is_new: bool = False


class ClusterResult(BaseModel):
    """Outcome of a clustering and reconciliation pass."""

    locations: list[LocationCluster] = Field(default_factory=list)
    created: int = 0
    updated: int = 0
    total_assigned: int = 0


# ---------------------------------------------------------------------------
# Weather and scoring
# ---------------------------------------------------------------------------


class WeatherSample(BaseModel):
    """Solar resource estimate for a 0.1 degree grid cell."""

    peak_sun_hours: float
    sunshine_hours: float | None = None
    cloud_cover_pct: float | None = None
    data_source: WeatherSource
    fetched_at: datetime.datetime


class HardwareSpec(BaseModel):
    """Static per-trailer hardware specification."""

    model_config = ConfigDict(frozen=True)

    solar_capacity_w: float
    battery_capacity_wh: float
    battery_usable_wh: float
    system_efficiency: float


class SpecsSection(BaseModel):
    solar_capacity_w: float
    battery_capacity_wh: float
    battery_usable_wh: float
    system_efficiency: float


class SolarSection(BaseModel):
    current_watts: float | None = None
    yield_today_wh: float | None = None
    score: float | None = None
    score_label: ScoreLabel | None = None
    panel_performance_pct: float | None = None
    avg_7d_yield_wh: float | None = None
    avg_7d_score: float | None = None


class BatterySection(BaseModel):
    soc: float | None = None
    stored_wh: float | None = None
    remaining_to_full_wh: float | None = None
    days_of_autonomy: float | None = None
    charge_time_hours: float | None = None
    temperature_c: float | None = None
    temp_status: TempStatus | None = None


class EnergySection(BaseModel):
    today_yield_wh: float | None = None
    today_consumed_wh: float | None = None
    today_balance_wh: float | None = None
    avg_daily_consumption_wh: float | None = None
    history_days: int = 0


class LocationSection(BaseModel):
    latitude: float | None = None
    longitude: float | None = None
    peak_sun_hours: float
    sunshine_hours: float | None = None
    cloud_cover_pct: float | None = None
    expected_daily_yield_wh: float
    data_source: WeatherSource


class IntelligenceReport(BaseModel):
    """Normalized per-unit health and performance report."""

    unit_id: int
    unit_name: str
    generated_at: datetime.datetime
    specs: SpecsSection
    solar: SolarSection
    battery: BatterySection
    energy: EnergySection
    location: LocationSection


# ---------------------------------------------------------------------------
# Poll results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnitPollResult:
    """Tagged per-unit outcome of a fetch inside a batch.

    Exactly one of ``value`` (on success) or ``error`` (on failure) is set.
    """

    unit_id: int
    ok: bool
    value: object | None = None
    error: str | None = None

    @classmethod
    def success(cls, unit_id: int, value: object) -> UnitPollResult:
        return cls(unit_id=unit_id, ok=True, value=value)

    @classmethod
    def failure(cls, unit_id: int, error: str) -> UnitPollResult:
        return cls(unit_id=unit_id, ok=False, error=error)


@dataclass(frozen=True)
class CycleSummary:
    """Counts from one poll cycle of a fleet."""

    ok: int = 0
    errors: int = 0
    elapsed_s: float = 0.0
    skipped: bool = False
