"""
Integration tests for the fleet HTTP API.

Routes are exercised through FastAPI's TestClient against a mocked
FleetService, so every test controls exactly what the service returns.

Tests verify:
- GET /health and GET / report ok and the unit count.
- Fleet reads: latest (epoch-ms timestamp), energy, alerts, network,
  intelligence.
- Unit reads: snapshot and intelligence return 404 when absent; history
  takes epoch-millisecond bounds.
- PUT /v1/units/{id}/location pins a unit, 404 for unknown units.
- POST /v1/locations/recluster passes the threshold and validates it.
- POST /v1/routers/{id}/link returns the new binding.

CHANGELOG:
- 2026-03-11: Add snapshot history endpoint tests (STORY-114)
- 2026-03-10: Add intelligence endpoint tests (STORY-112)
- 2026-03-08: Add operator action tests (STORY-109)
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import datetime
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from fleet_fakes import NOW, TODAY, make_record, make_snapshot

from fleet.src.api.main import create_app
from fleet.src.models import (
    BatterySection,
    ClusterResult,
    DeficitAlert,
    DeficitDay,
    EnergySection,
    IntelligenceReport,
    LocationSection,
    RouterBinding,
    RouterDevice,
    RouterStatus,
    SolarSection,
    SpecsSection,
)
from fleet.src.service import FleetService


def _report(unit_id: int = 1) -> IntelligenceReport:
    return IntelligenceReport(
        unit_id=unit_id,
        unit_name=f"Trailer {unit_id}",
        generated_at=NOW,
        specs=SpecsSection(
            solar_capacity_w=1000.0,
            battery_capacity_wh=10000.0,
            battery_usable_wh=8000.0,
            system_efficiency=0.8,
        ),
        solar=SolarSection(score=75.0, score_label="Good"),
        battery=BatterySection(soc=80.0),
        energy=EnergySection(),
        location=LocationSection(
            peak_sun_hours=4.5, expected_daily_yield_wh=3600.0, data_source="default"
        ),
    )


@pytest.fixture()
def service() -> MagicMock:
    """FleetService mock with empty defaults for every read."""
    mock = MagicMock(spec=FleetService)
    mock.unit_count = 0
    mock.fleet_latest.return_value = []
    mock.fleet_energy.return_value = []
    mock.compute_alerts.return_value = []
    mock.router_devices.return_value = []
    mock.get_snapshot.return_value = None
    mock.get_ledger.return_value = []
    mock.score = AsyncMock(return_value=None)
    mock.score_all = AsyncMock(return_value=[])
    mock.cluster = AsyncMock(return_value=ClusterResult())
    mock.assign_location = AsyncMock(return_value=True)
    mock.snapshot_history = AsyncMock(return_value=[])
    return mock


@pytest.fixture()
def client(service: MagicMock) -> Generator[TestClient, None, None]:
    with TestClient(create_app(service)) as test_client:
        yield test_client


class TestHealth:
    def test_health_reports_unit_count(self, client: TestClient, service: MagicMock) -> None:
        service.unit_count = 4
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "units": 4}

    def test_root(self, client: TestClient) -> None:
        assert client.get("/").json() == {"status": "ok"}


class TestFleetRoutes:
    def test_latest_adds_epoch_ms_timestamp(
        self, client: TestClient, service: MagicMock
    ) -> None:
        service.fleet_latest.return_value = [make_snapshot(battery_soc=80.0)]

        body = client.get("/v1/fleet/latest").json()

        assert body["count"] == 1
        unit = body["units"][0]
        assert unit["unit_id"] == 1
        assert unit["battery_soc"] == 80.0
        assert unit["timestamp"] == int(NOW.timestamp() * 1000)

    def test_energy(self, client: TestClient, service: MagicMock) -> None:
        days = [{"date": TODAY.isoformat(), "yield_wh": 10.0, "consumed_wh": None}]
        service.fleet_energy.return_value = [
            {"unit_id": 1, "unit_name": "Trailer 1", "days": days}
        ]

        body = client.get("/v1/fleet/energy").json()

        assert body["units"][0]["days"] == days

    def test_alerts(self, client: TestClient, service: MagicMock) -> None:
        day = TODAY - datetime.timedelta(days=1)
        service.compute_alerts.return_value = [
            DeficitAlert(
                unit_id=1,
                unit_name="Trailer 1",
                streak_days=2,
                severity="caution",
                deficit_days=[
                    DeficitDay(date=day, yield_wh=100.0, consumed_wh=300.0, deficit_wh=200.0)
                ],
            )
        ]

        body = client.get("/v1/fleet/alerts").json()

        assert body[0]["severity"] == "caution"
        assert body[0]["deficit_days"][0]["date"] == day.isoformat()

    def test_network(self, client: TestClient, service: MagicMock) -> None:
        service.router_devices.return_value = [
            RouterStatus(
                router=RouterDevice(router_id=9, name="Spare", online=True),
                unit_id=-9,
                unit_name="Spare",
            )
        ]

        body = client.get("/v1/fleet/network").json()

        assert body == [
            {
                "router": {
                    "router_id": 9,
                    "name": "Spare",
                    "online": True,
                    "signal_bar": None,
                    "rsrp": None,
                    "rsrq": None,
                    "sinr": None,
                    "carrier": None,
                    "latitude": None,
                    "longitude": None,
                },
                "unit_id": -9,
                "unit_name": "Spare",
            }
        ]

    def test_intelligence(self, client: TestClient, service: MagicMock) -> None:
        service.score_all.return_value = [_report(1), _report(2)]

        body = client.get("/v1/fleet/intelligence").json()

        assert [r["unit_id"] for r in body] == [1, 2]
        assert body[0]["solar"]["score_label"] == "Good"


class TestUnitRoutes:
    def test_snapshot_found(self, client: TestClient, service: MagicMock) -> None:
        service.get_snapshot.return_value = make_snapshot(unit_id=5, name="Trailer 5")

        response = client.get("/v1/units/5/snapshot")

        assert response.status_code == 200
        assert response.json()["unit_name"] == "Trailer 5"
        service.get_snapshot.assert_called_once_with(5)

    def test_snapshot_missing_is_404(self, client: TestClient) -> None:
        assert client.get("/v1/units/5/snapshot").status_code == 404

    def test_negative_unit_ids_are_accepted(
        self, client: TestClient, service: MagicMock
    ) -> None:
        client.get("/v1/units/-9/snapshot")
        service.get_snapshot.assert_called_once_with(-9)

    def test_ledger(self, client: TestClient, service: MagicMock) -> None:
        service.get_ledger.return_value = [make_record(TODAY, 1500.0, None)]

        body = client.get("/v1/units/1/ledger").json()

        assert body[0]["yield_wh"] == 1500.0
        assert body[0]["consumed_wh"] is None

    def test_history_converts_millisecond_bounds(
        self, client: TestClient, service: MagicMock
    ) -> None:
        service.snapshot_history.return_value = [make_snapshot(battery_soc=55.0)]
        start_ms = int(NOW.timestamp() * 1000) - 3_600_000
        end_ms = int(NOW.timestamp() * 1000)

        response = client.get("/v1/units/1/history", params={"start": start_ms, "end": end_ms})

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["records"][0]["timestamp"] == end_ms
        service.snapshot_history.assert_awaited_once_with(
            1, NOW - datetime.timedelta(hours=1), NOW
        )

    def test_history_defaults_to_everything_until_now(
        self, client: TestClient, service: MagicMock
    ) -> None:
        body = client.get("/v1/units/1/history").json()

        assert body == {"unit_id": 1, "records": [], "count": 0}
        _, start, end = service.snapshot_history.await_args.args
        assert start.timestamp() == 0
        assert end > NOW

    def test_history_rejects_inverted_window(
        self, client: TestClient, service: MagicMock
    ) -> None:
        response = client.get("/v1/units/1/history", params={"start": 2000, "end": 1000})
        assert response.status_code == 422
        service.snapshot_history.assert_not_awaited()

    def test_intelligence_missing_is_404(self, client: TestClient) -> None:
        assert client.get("/v1/units/1/intelligence").status_code == 404

    def test_intelligence_found(self, client: TestClient, service: MagicMock) -> None:
        service.score.return_value = _report(3)
        assert client.get("/v1/units/3/intelligence").json()["unit_id"] == 3

    def test_assign_location(self, client: TestClient, service: MagicMock) -> None:
        response = client.put("/v1/units/1/location", json={"location_id": 7})

        assert response.status_code == 200
        assert response.json() == {"unit_id": 1, "location_id": 7, "manual_override": True}
        service.assign_location.assert_awaited_once_with(1, 7)

    def test_assign_location_unknown_unit(
        self, client: TestClient, service: MagicMock
    ) -> None:
        service.assign_location.return_value = False
        response = client.put("/v1/units/99/location", json={"location_id": None})
        assert response.status_code == 404


class TestOperationRoutes:
    def test_recluster_default_threshold(
        self, client: TestClient, service: MagicMock
    ) -> None:
        response = client.post("/v1/locations/recluster")

        assert response.status_code == 200
        assert response.json()["locations"] == []
        service.cluster.assert_awaited_once_with(None)

    def test_recluster_custom_threshold(
        self, client: TestClient, service: MagicMock
    ) -> None:
        client.post("/v1/locations/recluster", params={"threshold_m": 150})
        service.cluster.assert_awaited_once_with(150.0)

    def test_recluster_rejects_non_positive_threshold(
        self, client: TestClient, service: MagicMock
    ) -> None:
        response = client.post("/v1/locations/recluster", params={"threshold_m": 0})
        assert response.status_code == 422
        service.cluster.assert_not_awaited()

    def test_link_router(self, client: TestClient, service: MagicMock) -> None:
        service.link_router.return_value = RouterBinding(
            router_id=9, unit_id=102, router_name="Spare"
        )

        response = client.post("/v1/routers/9/link", json={"unit_id": 102})

        assert response.status_code == 200
        assert response.json() == {"router_id": 9, "unit_id": 102, "router_name": "Spare"}
        service.link_router.assert_called_once_with(9, 102)

    def test_link_router_requires_unit_id(self, client: TestClient) -> None:
        assert client.post("/v1/routers/9/link", json={}).status_code == 422
