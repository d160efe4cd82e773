"""
Unit tests for the weather service.

Tests verify:
- 0.1 degree cache cells.
- Open-Meteo parsing (MJ/m2 to peak sun hours, sunshine seconds to hours).
- Clear-sky model sanity (equator vs. polar night).
- Fresh samples are served from cache; stale ones are refetched.
- Provider failure falls back to the astronomical model and is retried
  after the short fallback TTL.
- Malformed provider URLs fall back the same way.
- Prewarm fetches each stale cell once.

CHANGELOG:
- 2026-03-11: Add malformed URL fallback test (STORY-114)
- 2026-03-09: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import httpx
import pytest
from fleet_fakes import NOW

from fleet.src.weather import (
    WeatherService,
    cell_for,
    clear_sky_peak_sun_hours,
    parse_open_meteo,
)

_PAYLOAD = {
    "daily": {"shortwave_radiation_sum": [18.0], "sunshine_duration": [36000.0]},
    "current": {"cloud_cover": 20},
}


def _service(handler, clock, **kwargs: object) -> WeatherService:
    return WeatherService(
        "https://api.open-meteo.com/v1/forecast",
        ttl_s=3600,
        transport=httpx.MockTransport(handler),
        clock=clock,
        **kwargs,
    )


class TestPureHelpers:
    def test_cell_rounds_to_tenth_degree(self) -> None:
        assert cell_for(43.6149, -116.2023) == (43.6, -116.2)

    def test_parse_open_meteo(self) -> None:
        sample = parse_open_meteo(_PAYLOAD, NOW)
        assert sample.peak_sun_hours == 5.0
        assert sample.sunshine_hours == 10.0
        assert sample.cloud_cover_pct == 20.0
        assert sample.data_source == "open-meteo"

    def test_parse_open_meteo_without_radiation_raises(self) -> None:
        with pytest.raises(ValueError):
            parse_open_meteo({"daily": {}}, NOW)

    def test_clear_sky_equator_is_plausible(self) -> None:
        psh = clear_sky_peak_sun_hours(0.0, 80)
        assert 6.0 < psh < 8.5

    def test_clear_sky_polar_night_is_zero(self) -> None:
        assert clear_sky_peak_sun_hours(80.0, 355) == 0.0


class TestWeatherService:
    @pytest.mark.asyncio
    async def test_fetch_then_cache(self, clock) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_PAYLOAD)

        service = _service(handler, clock)
        first = await service.sample(43.61, -116.21)
        second = await service.sample(43.64, -116.18)

        assert first.peak_sun_hours == 5.0
        assert second is first
        assert service.fetch_count == 1
        assert requests[0].url.params["latitude"] == "43.6"
        assert requests[0].url.params["daily"] == "shortwave_radiation_sum,sunshine_duration"

    @pytest.mark.asyncio
    async def test_stale_sample_is_refetched(self, clock) -> None:
        service = _service(lambda r: httpx.Response(200, json=_PAYLOAD), clock)
        await service.sample(1.0, 1.0)
        clock.advance(seconds=3601)
        await service.sample(1.0, 1.0)
        assert service.fetch_count == 2

    @pytest.mark.asyncio
    async def test_provider_failure_uses_astronomical_model(self, clock) -> None:
        service = _service(lambda r: httpx.Response(503), clock)

        sample = await service.sample(0.0, 0.0)

        assert sample.data_source == "astronomical"
        assert sample.peak_sun_hours == clear_sky_peak_sun_hours(0.0, NOW.timetuple().tm_yday)

    @pytest.mark.asyncio
    async def test_fallback_is_retried_after_short_ttl(self, clock) -> None:
        service = _service(lambda r: httpx.Response(503), clock)
        await service.sample(0.0, 0.0)
        clock.advance(seconds=60)
        await service.sample(0.0, 0.0)
        assert service.fetch_count == 1
        clock.advance(seconds=300)
        await service.sample(0.0, 0.0)
        assert service.fetch_count == 2

    @pytest.mark.asyncio
    async def test_transport_error_uses_astronomical_model(self, clock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        service = _service(handler, clock)
        sample = await service.sample(10.0, 10.0)
        assert sample.data_source == "astronomical"

    @pytest.mark.asyncio
    async def test_invalid_url_uses_astronomical_model(self, clock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.InvalidURL("Invalid URL 'open-meteo'")

        service = _service(handler, clock)
        sample = await service.sample(10.0, 10.0)
        assert sample.data_source == "astronomical"

    @pytest.mark.asyncio
    async def test_prewarm_fetches_each_stale_cell_once(self, clock) -> None:
        service = _service(lambda r: httpx.Response(200, json=_PAYLOAD), clock)
        await service.sample(5.0, 5.0)

        fetched = await service.prewarm(
            [(5.01, 5.02), (1.0, 1.0), (1.04, 0.98), (2.0, 2.0)]
        )

        assert fetched == 2
        assert service.fetch_count == 3
