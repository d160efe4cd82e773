"""
Health check endpoint for the fleet API.

Provides GET /health returning ``{"status": "ok"}`` plus the number of units
currently held in memory. No authentication is required -- this is intended
for Docker HEALTHCHECK and internal monitoring only.

CHANGELOG:
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    """Return a simple health status.

    Returns:
        dict: ``{"status": "ok", "units": <count>}``.
    """
    return {"status": "ok", "units": request.app.state.service.unit_count}
