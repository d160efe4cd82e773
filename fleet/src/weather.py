"""
Solar resource estimates per GPS cell for the intelligence scorer.

Fetches today's shortwave radiation, sunshine duration, and current cloud
cover from Open-Meteo and converts radiation (MJ/m2) to peak sun hours by
dividing by 3.6. Samples are cached per 0.1 degree cell with a freshness TTL.

When Open-Meteo is unreachable the service falls back to an astronomical
clear-sky estimate from latitude and day of year; ``sample()`` never raises.

CHANGELOG:
- 2026-03-11: Fall back on malformed provider URLs as well (STORY-114)
- 2026-03-09: Add concurrent prewarm for fleet-wide scoring (STORY-112)
- 2026-03-08: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import math
from collections.abc import Callable, Iterable
from datetime import UTC

import httpx

from fleet.src.models import WeatherSample

logger = logging.getLogger(__name__)

SOLAR_CONSTANT_W_M2: float = 1367.0
CLEAR_SKY_TRANSMITTANCE: float = 0.75
MJ_PER_KWH: float = 3.6
FALLBACK_TTL_S: int = 300
"""Astronomical fallbacks are cached briefly so the provider is retried soon."""

Cell = tuple[float, float]


def cell_for(lat: float, lon: float) -> Cell:
    """Round a coordinate to its 0.1 degree cache cell."""
    return (round(lat, 1), round(lon, 1))


def clear_sky_peak_sun_hours(lat: float, day_of_year: int) -> float:
    """Estimate clear-sky peak sun hours on a horizontal surface.

    Uses Cooper's solar declination, the sunset hour angle, and daily
    extraterrestrial irradiation, scaled by a fixed clear-sky transmittance.

    Args:
        lat: Latitude in degrees.
        day_of_year: 1-366.

    Returns:
        Peak sun hours (kWh/m2/day), rounded to two decimals.
    """
    phi = math.radians(lat)
    decl = math.radians(23.45) * math.sin(2 * math.pi * (284 + day_of_year) / 365)
    cos_ws = max(-1.0, min(1.0, -math.tan(phi) * math.tan(decl)))
    ws = math.acos(cos_ws)
    eccentricity = 1 + 0.033 * math.cos(2 * math.pi * day_of_year / 365)
    h0_j_m2 = (
        (24 * 3600 * SOLAR_CONSTANT_W_M2 / math.pi)
        * eccentricity
        * (
            math.cos(phi) * math.cos(decl) * math.sin(ws)
            + ws * math.sin(phi) * math.sin(decl)
        )
    )
    psh = CLEAR_SKY_TRANSMITTANCE * max(h0_j_m2, 0.0) / 3.6e6
    return round(psh, 2)


def parse_open_meteo(payload: dict, fetched_at: datetime.datetime) -> WeatherSample:
    """Convert an Open-Meteo forecast response into a :class:`WeatherSample`.

    Raises:
        ValueError: If the response has no radiation value for today.
    """
    daily = payload.get("daily") or {}
    radiation = (daily.get("shortwave_radiation_sum") or [None])[0]
    if radiation is None:
        raise ValueError("Open-Meteo response has no shortwave_radiation_sum")
    sunshine_s = (daily.get("sunshine_duration") or [None])[0]
    cloud = (payload.get("current") or {}).get("cloud_cover")
    return WeatherSample(
        peak_sun_hours=round(float(radiation) / MJ_PER_KWH, 2),
        sunshine_hours=round(float(sunshine_s) / 3600, 1) if sunshine_s is not None else None,
        cloud_cover_pct=float(cloud) if cloud is not None else None,
        data_source="open-meteo",
        fetched_at=fetched_at,
    )


class WeatherService:
    """Cached per-cell weather lookups with an astronomical fallback.

    Args:
        base_url: Open-Meteo forecast endpoint.
        ttl_s: Freshness window for successful samples.
        timeout_s: Transport timeout per request.
        transport: Optional httpx transport (for tests).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        base_url: str = "https://api.open-meteo.com/v1/forecast",
        *,
        ttl_s: int = 3600,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self._base_url = base_url
        self._ttl_s = ttl_s
        self._timeout_s = timeout_s
        self._transport = transport
        self._clock = clock or (lambda: datetime.datetime.now(tz=UTC))
        self._cache: dict[Cell, tuple[WeatherSample, float]] = {}
        self.fetch_count: int = 0

    async def sample(self, lat: float, lon: float) -> WeatherSample:
        """Return a fresh sample for the cell containing ``(lat, lon)``."""
        cell = cell_for(lat, lon)
        cached = self._fresh(cell)
        if cached is not None:
            return cached

        now = self._clock()
        try:
            sample = await self._fetch(cell, now)
            ttl = self._ttl_s
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, KeyError, TypeError):
            logger.warning(
                "Weather fetch failed for cell %s, using astronomical estimate",
                cell,
                exc_info=True,
            )
            sample = WeatherSample(
                peak_sun_hours=clear_sky_peak_sun_hours(
                    cell[0], now.timetuple().tm_yday
                ),
                data_source="astronomical",
                fetched_at=now,
            )
            ttl = FALLBACK_TTL_S
        self._cache[cell] = (sample, ttl)
        return sample

    async def prewarm(self, points: Iterable[tuple[float, float]]) -> int:
        """Fetch every stale cell covering *points* concurrently.

        Returns the number of distinct cells that needed a fetch.
        """
        stale = {cell_for(lat, lon) for lat, lon in points}
        stale = {cell for cell in stale if self._fresh(cell) is None}
        if stale:
            await asyncio.gather(*(self.sample(lat, lon) for lat, lon in stale))
        return len(stale)

    def _fresh(self, cell: Cell) -> WeatherSample | None:
        entry = self._cache.get(cell)
        if entry is None:
            return None
        sample, ttl = entry
        age = (self._clock() - sample.fetched_at).total_seconds()
        return sample if age < ttl else None

    async def _fetch(self, cell: Cell, now: datetime.datetime) -> WeatherSample:
        params = {
            "latitude": cell[0],
            "longitude": cell[1],
            "daily": "shortwave_radiation_sum,sunshine_duration",
            "current": "cloud_cover",
            "timezone": "auto",
            "forecast_days": 1,
        }
        self.fetch_count += 1
        async with httpx.AsyncClient(
            timeout=self._timeout_s, transport=self._transport
        ) as client:
            response = await client.get(self._base_url, params=params)
            response.raise_for_status()
        return parse_open_meteo(response.json(), now)
