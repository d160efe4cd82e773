"""
Reverse geocoding of location centroids via OpenStreetMap Nominatim.

Wraps geopy's synchronous ``Nominatim`` geocoder in a worker thread so the
event loop is not blocked. Lookups are best-effort: any geopy error is logged
and returns None, and the caller falls back to a generated site name.

Nominatim's usage policy allows one request per second; the rate limit is
enforced by the caller (the clustering pass sleeps after each lookup).

CHANGELOG:
- 2026-03-05: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from geopy.exc import GeopyError
from geopy.geocoders import Nominatim

logger = logging.getLogger(__name__)

GEOCODE_TIMEOUT_S: float = 10.0


@dataclass(frozen=True)
class GeocodeResult:
    """Place name parts for a coordinate."""

    city: str
    state: str
    address: str | None

    @property
    def display_name(self) -> str:
        """``"City, State"``, or just the city when the state is unknown."""
        return f"{self.city}, {self.state}" if self.state else self.city


def parse_address(raw: dict) -> GeocodeResult:
    """Build a :class:`GeocodeResult` from a Nominatim ``address`` dict."""
    road = raw.get("road") or raw.get("hamlet") or ""
    city = (
        raw.get("city")
        or raw.get("town")
        or raw.get("village")
        or raw.get("county")
        or "Unknown"
    )
    state = raw.get("state") or ""
    postcode = raw.get("postcode") or ""
    parts = [p for p in (road, city, state, postcode) if p]
    return GeocodeResult(city=city, state=state, address=", ".join(parts) or None)


class ReverseGeocoder:
    """Async facade over geopy's Nominatim reverse geocoder.

    Args:
        user_agent: User-Agent string required by the Nominatim policy.
        geolocator: Optional pre-built geopy geocoder (for tests).
    """

    def __init__(self, user_agent: str, geolocator: object | None = None) -> None:
        self._geolocator = geolocator or Nominatim(user_agent=user_agent)

    async def reverse(self, lat: float, lon: float) -> GeocodeResult | None:
        """Return place name parts for ``(lat, lon)``, or None on failure."""
        try:
            location = await asyncio.to_thread(
                self._geolocator.reverse,  # type: ignore[attr-defined]
                (lat, lon),
                language="en",
                zoom=16,
                addressdetails=True,
                timeout=GEOCODE_TIMEOUT_S,
            )
        except GeopyError:
            logger.warning("Reverse geocode failed for %.5f,%.5f", lat, lon, exc_info=True)
            return None
        if location is None:
            logger.info("Reverse geocode found nothing for %.5f,%.5f", lat, lon)
            return None
        return parse_address(location.raw.get("address", {}))
