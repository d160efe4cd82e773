"""
Shared test fixtures for fleet tests.

Environment variables for FleetSettings are cleaned before each test and
the working directory is moved to tmp_path so no .env file is loaded.
Fakes live in ``fleet_fakes``; this module only exposes them as fixtures.

CHANGELOG:
- 2026-03-08: Move fakes to fleet_fakes (STORY-111)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import pytest
from fleet_fakes import FakeClock, FakeStore

from fleet.src.models import HardwareSpec

# All FleetSettings environment variable names, used for cleanup.
_ALL_FLEET_ENV_VARS = (
    "VRM_BASE_URL",
    "VRM_API_TOKEN",
    "VRM_USER_ID",
    "IC2_BASE_URL",
    "IC2_CLIENT_ID",
    "IC2_CLIENT_SECRET",
    "IC2_ORG_ID",
    "VRM_POLL_INTERVAL_S",
    "IC2_POLL_INTERVAL_S",
    "BATCH_SIZE",
    "BATCH_DELAY_MS",
    "HTTP_TIMEOUT_S",
    "DATABASE_URL",
    "CLUSTER_THRESHOLD_M",
    "GEOCODER_USER_AGENT",
    "GEOCODE_DELAY_S",
    "WEATHER_BASE_URL",
    "WEATHER_TTL_S",
    "DEFAULT_PEAK_SUN_HOURS",
    "SOLAR_CAPACITY_W",
    "BATTERY_CAPACITY_WH",
    "BATTERY_USABLE_WH",
    "SYSTEM_EFFICIENCY",
    "LEDGER_RETENTION_DAYS",
    "HEALTH_PATH",
    "API_HOST",
    "API_PORT",
)


@pytest.fixture(autouse=True)
def _clean_fleet_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all fleet env vars and isolate from .env files before each test."""
    for var in _ALL_FLEET_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def spec() -> HardwareSpec:
    """Hardware spec: 1000 W PV, 10 kWh battery, 0.8 efficiency."""
    return HardwareSpec(
        solar_capacity_w=1000.0,
        battery_capacity_wh=10000.0,
        battery_usable_wh=8000.0,
        system_efficiency=0.8,
    )
