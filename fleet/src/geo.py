"""
Great-circle distance helpers.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import math

EARTH_RADIUS_M: float = 6_371_000.0
"""Mean Earth radius in meters used by the haversine formula."""


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the haversine distance in meters between two GPS points."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
