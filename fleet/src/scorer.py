"""
Location- and weather-adjusted performance scoring for a trailer.

Combines the live snapshot, the peak sun hours for the trailer's GPS cell,
the static hardware spec, and up to seven prior ledger days into an
:class:`~fleet.src.models.IntelligenceReport`.

Every derived number is None when one of its inputs is unavailable; zero is
only reported when the inputs really produce zero.

CHANGELOG:
- 2026-03-09: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable, Sequence
from datetime import UTC

from fleet.src.ledger import EnergyLedger
from fleet.src.models import (
    BatterySection,
    DailyEnergyRecord,
    EnergySection,
    HardwareSpec,
    IntelligenceReport,
    LocationSection,
    ScoreLabel,
    SolarSection,
    SpecsSection,
    TempStatus,
    UnitSnapshot,
    WeatherSample,
)
from fleet.src.weather import WeatherService

logger = logging.getLogger(__name__)

HISTORY_DAYS: int = 7
MIN_CHARGE_WATTS: float = 50.0
"""Below this PV power a time-to-full estimate is meaningless."""

TEMP_CRITICAL_C: float = 45.0
TEMP_WARNING_C: float = 35.0
TEMP_COLD_C: float = 5.0


def score_label(score: float | None) -> ScoreLabel | None:
    if score is None:
        return None
    if score >= 90:
        return "Excellent"
    if score >= 70:
        return "Good"
    if score >= 50:
        return "Fair"
    return "Poor"


def battery_temp_status(temp_c: float | None) -> TempStatus | None:
    if temp_c is None:
        return None
    if temp_c > TEMP_CRITICAL_C:
        return "critical"
    if temp_c > TEMP_WARNING_C:
        return "warning"
    if temp_c < TEMP_COLD_C:
        return "cold"
    return "normal"


def _pct(numerator: float | None, denominator: float | None) -> float | None:
    if numerator is None or not denominator:
        return None
    return round(numerator / denominator * 100, 1)


def _positive_mean(values: Sequence[float | None]) -> float | None:
    kept = [v for v in values if v is not None and v > 0]
    if not kept:
        return None
    return sum(kept) / len(kept)


def _round_wh(value: float | None) -> float | None:
    return round(value) if value is not None else None


def build_report(
    snapshot: UnitSnapshot,
    spec: HardwareSpec,
    weather: WeatherSample,
    ledger_entries: Sequence[DailyEnergyRecord],
    *,
    today: datetime.date,
    gps: tuple[float, float] | None = None,
    generated_at: datetime.datetime | None = None,
) -> IntelligenceReport:
    """Compute the intelligence report from already-gathered inputs.

    Args:
        snapshot: The unit's latest live reading.
        spec: Static hardware specification.
        weather: Solar resource sample for the unit's cell.
        ledger_entries: The unit's ledger records (any order).
        today: Current calendar date; earlier entries count as history.
        gps: The unit's ``(lat, lon)``, if known.
        generated_at: Report timestamp; defaults to now.
    """
    expected_wh = spec.solar_capacity_w * weather.peak_sun_hours * spec.system_efficiency

    today_entry = next((e for e in ledger_entries if e.date == today), None)
    history = sorted((e for e in ledger_entries if e.date < today), key=lambda e: e.date)
    history = history[-HISTORY_DAYS:]

    # -- Solar --
    if snapshot.solar_yield_today is not None:
        yield_today_wh = snapshot.solar_yield_today * 1000
    elif today_entry is not None:
        yield_today_wh = today_entry.yield_wh
    else:
        yield_today_wh = None
    score = _pct(yield_today_wh, expected_wh)
    avg_yield = _positive_mean([e.yield_wh for e in history])

    # -- Energy --
    consumed_today_wh = today_entry.consumed_wh if today_entry is not None else None
    avg_consumption = _positive_mean([e.consumed_wh for e in history])
    if avg_consumption is None and consumed_today_wh is not None and consumed_today_wh > 0:
        avg_consumption = consumed_today_wh
    balance = (
        yield_today_wh - consumed_today_wh
        if yield_today_wh is not None and consumed_today_wh is not None
        else None
    )

    # -- Battery --
    soc = snapshot.battery_soc
    stored_wh = spec.battery_capacity_wh * soc / 100 if soc is not None else None
    remaining_wh = (
        max(spec.battery_capacity_wh - stored_wh, 0.0) if stored_wh is not None else None
    )
    autonomy = (
        round(stored_wh / avg_consumption, 1)
        if stored_wh is not None and avg_consumption
        else None
    )
    watts = snapshot.solar_watts
    charge_hours = (
        round(remaining_wh / watts, 1)
        if remaining_wh is not None and watts is not None and watts > MIN_CHARGE_WATTS
        else None
    )

    return IntelligenceReport(
        unit_id=snapshot.unit_id,
        unit_name=snapshot.unit_name,
        generated_at=generated_at or datetime.datetime.now(tz=UTC),
        specs=SpecsSection(**spec.model_dump()),
        solar=SolarSection(
            current_watts=watts,
            yield_today_wh=_round_wh(yield_today_wh),
            score=score,
            score_label=score_label(score),
            panel_performance_pct=_pct(watts, spec.solar_capacity_w),
            avg_7d_yield_wh=_round_wh(avg_yield),
            avg_7d_score=_pct(avg_yield, expected_wh),
        ),
        battery=BatterySection(
            soc=soc,
            stored_wh=_round_wh(stored_wh),
            remaining_to_full_wh=_round_wh(remaining_wh),
            days_of_autonomy=autonomy,
            charge_time_hours=charge_hours,
            temperature_c=snapshot.battery_temp,
            temp_status=battery_temp_status(snapshot.battery_temp),
        ),
        energy=EnergySection(
            today_yield_wh=_round_wh(yield_today_wh),
            today_consumed_wh=_round_wh(consumed_today_wh),
            today_balance_wh=_round_wh(balance),
            avg_daily_consumption_wh=_round_wh(avg_consumption),
            history_days=len(history),
        ),
        location=LocationSection(
            latitude=gps[0] if gps is not None else None,
            longitude=gps[1] if gps is not None else None,
            peak_sun_hours=round(weather.peak_sun_hours, 2),
            sunshine_hours=weather.sunshine_hours,
            cloud_cover_pct=weather.cloud_cover_pct,
            expected_daily_yield_wh=round(expected_wh),
            data_source=weather.data_source,
        ),
    )


class IntelligenceScorer:
    """Scores units using the ledger and cached weather samples.

    Args:
        spec: Static hardware specification shared by all trailers.
        ledger: The daily energy ledger.
        weather: Weather service for peak sun hours.
        default_peak_sun_hours: Used for units without GPS.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        spec: HardwareSpec,
        ledger: EnergyLedger,
        weather: WeatherService,
        *,
        default_peak_sun_hours: float = 4.5,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self._spec = spec
        self._ledger = ledger
        self._weather = weather
        self._default_psh = default_peak_sun_hours
        self._clock = clock or (lambda: datetime.datetime.now(tz=UTC))

    async def score(
        self,
        snapshot: UnitSnapshot | None,
        gps: tuple[float, float] | None,
    ) -> IntelligenceReport | None:
        """Build the report for one unit; None when there is no snapshot."""
        if snapshot is None:
            return None
        weather = await self._weather_for(gps)
        now = self._clock()
        return build_report(
            snapshot,
            self._spec,
            weather,
            self._ledger.entries(snapshot.unit_id),
            today=now.date(),
            gps=gps,
            generated_at=now,
        )

    async def prewarm(self, points: Sequence[tuple[float, float]]) -> int:
        """Warm the weather cache for the given GPS points."""
        return await self._weather.prewarm(points)

    async def _weather_for(self, gps: tuple[float, float] | None) -> WeatherSample:
        if gps is None:
            return WeatherSample(
                peak_sun_hours=self._default_psh,
                data_source="default",
                fetched_at=self._clock(),
            )
        return await self._weather.sample(*gps)
