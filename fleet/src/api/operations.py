"""
Operator action endpoints.

- POST /v1/locations/recluster?threshold_m=: rerun clustering now.
- POST /v1/routers/{router_id}/link: bind a router to a unit.

CHANGELOG:
- 2026-03-08: Initial creation (STORY-109)

TODO:
- None
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Query
from pydantic import BaseModel

from fleet.src.api.deps import Service
from fleet.src.models import ClusterResult, RouterBinding

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["operations"])


class RouterLink(BaseModel):
    """Request body for POST /v1/routers/{router_id}/link."""

    unit_id: int


@router.post("/locations/recluster")
async def recluster(
    service: Service,
    threshold_m: Annotated[float | None, Query(gt=0)] = None,
) -> ClusterResult:
    """Cluster every non-pinned unit with GPS and reconcile locations."""
    result = await service.cluster(threshold_m)
    logger.info(
        "Recluster requested: %d created, %d updated, %d assigned",
        result.created,
        result.updated,
        result.total_assigned,
    )
    return result


@router.post("/routers/{router_id}/link")
async def link_router(router_id: int, body: RouterLink, service: Service) -> RouterBinding:
    """Bind a router to a unit; any previous binding to that unit is replaced."""
    return service.link_router(router_id, body.unit_id)
