"""
Per-unit endpoints.

- GET /v1/units/{unit_id}/snapshot: latest snapshot (404 when absent).
- GET /v1/units/{unit_id}/ledger: daily energy records, oldest first.
- GET /v1/units/{unit_id}/history?start=&end=: stored snapshots between two
  epoch-millisecond bounds (inclusive), oldest first.
- GET /v1/units/{unit_id}/intelligence: scored report (404 without snapshot).
- PUT /v1/units/{unit_id}/location: pin a unit to a location.

CHANGELOG:
- 2026-03-11: Add snapshot history endpoint (STORY-114)
- 2026-03-10: Add unit intelligence endpoint (STORY-112)
- 2026-03-08: Add manual location assignment (STORY-109)
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

import datetime
import logging
from datetime import UTC
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from fleet.src.api.deps import Service
from fleet.src.api.fleet import _snapshot_to_dict
from fleet.src.models import DailyEnergyRecord, IntelligenceReport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/units", tags=["units"])


class LocationAssignment(BaseModel):
    """Request body for PUT /v1/units/{unit_id}/location."""

    location_id: int | None


@router.get("/{unit_id}/snapshot")
async def unit_snapshot(unit_id: int, service: Service) -> dict:
    """Return the latest snapshot for one unit.

    Raises:
        HTTPException: 404 if the unit has no snapshot.
    """
    snapshot = service.get_snapshot(unit_id)
    if snapshot is None:
        raise HTTPException(
            status_code=404,
            detail=f"No snapshot for unit {unit_id}.",
        )
    return _snapshot_to_dict(snapshot)


@router.get("/{unit_id}/ledger")
async def unit_ledger(unit_id: int, service: Service) -> list[DailyEnergyRecord]:
    return service.get_ledger(unit_id)


def _from_ms(value: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(value / 1000, tz=UTC)


@router.get("/{unit_id}/history")
async def unit_history(
    unit_id: int,
    service: Service,
    start: Annotated[
        int, Query(ge=0, description="Lower bound, epoch milliseconds (inclusive).")
    ] = 0,
    end: Annotated[
        int | None,
        Query(ge=0, description="Upper bound, epoch milliseconds (inclusive); now if omitted."),
    ] = None,
) -> dict:
    """Return stored snapshots for one unit inside a time window.

    Returns:
        dict: ``{"unit_id": N, "records": [...], "count": N}``.

    Raises:
        HTTPException: 422 if start is after end.
    """
    upper = _from_ms(end) if end is not None else datetime.datetime.now(tz=UTC)
    lower = _from_ms(start)
    if lower > upper:
        raise HTTPException(status_code=422, detail="start must not be after end.")
    records = [
        _snapshot_to_dict(s) for s in await service.snapshot_history(unit_id, lower, upper)
    ]
    return {"unit_id": unit_id, "records": records, "count": len(records)}


@router.get("/{unit_id}/intelligence")
async def unit_intelligence(unit_id: int, service: Service) -> IntelligenceReport:
    """Return the intelligence report for one unit.

    Raises:
        HTTPException: 404 if the unit has no snapshot to score.
    """
    report = await service.score(unit_id)
    if report is None:
        raise HTTPException(
            status_code=404,
            detail=f"No snapshot for unit {unit_id}.",
        )
    return report


@router.put("/{unit_id}/location")
async def assign_location(
    unit_id: int, body: LocationAssignment, service: Service
) -> dict:
    """Pin a unit to a location, or clear it with ``location_id: null``.

    The unit is excluded from automatic clustering afterwards.

    Raises:
        HTTPException: 404 if the unit has no assignment row yet.
    """
    updated = await service.assign_location(unit_id, body.location_id)
    if not updated:
        raise HTTPException(
            status_code=404,
            detail=f"Unit {unit_id} has no location assignment record.",
        )
    logger.info("Unit %d manually assigned to location %s", unit_id, body.location_id)
    return {"unit_id": unit_id, "location_id": body.location_id, "manual_override": True}
