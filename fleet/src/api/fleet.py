"""
Fleet-wide read endpoints.

- GET /v1/fleet/latest: latest snapshot per unit, ordered by name.
- GET /v1/fleet/energy: per-unit daily yield and consumption.
- GET /v1/fleet/alerts: deficit alerts, longest streak first.
- GET /v1/fleet/network: router status with the resolved unit.
- GET /v1/fleet/intelligence: intelligence reports for every unit.

CHANGELOG:
- 2026-03-10: Add fleet intelligence endpoint (STORY-112)
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

import logging

from fastapi import APIRouter

from fleet.src.api.deps import Service
from fleet.src.models import DeficitAlert, IntelligenceReport, RouterStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/fleet", tags=["fleet"])


def _snapshot_to_dict(snapshot) -> dict:
    """Serialise a UnitSnapshot with its capture time in epoch milliseconds."""
    data = snapshot.model_dump(mode="json")
    data["timestamp"] = snapshot.timestamp_ms
    return data


@router.get("/latest")
async def fleet_latest(service: Service) -> dict:
    """Return the latest snapshot for every unit.

    Returns:
        dict: ``{"units": [...], "count": N}``.
    """
    units = [_snapshot_to_dict(s) for s in service.fleet_latest()]
    return {"units": units, "count": len(units)}


@router.get("/energy")
async def fleet_energy(service: Service) -> dict:
    """Return daily energy history for every unit in the ledger."""
    return {"units": service.fleet_energy()}


@router.get("/alerts")
async def fleet_alerts(service: Service) -> list[DeficitAlert]:
    return service.compute_alerts()


@router.get("/network")
async def fleet_network(service: Service) -> list[RouterStatus]:
    return service.router_devices()


@router.get("/intelligence")
async def fleet_intelligence(service: Service) -> list[IntelligenceReport]:
    """Score every unit; weather cells are fetched once up front."""
    return await service.score_all()
