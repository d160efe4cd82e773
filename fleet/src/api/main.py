"""
FastAPI application factory for the fleet API.

The app is created around an existing FleetService; the daemon owns the
service lifecycle (poll loops, persistence) and the API only reads from it
or triggers operator actions.

CHANGELOG:
- 2026-03-08: Register operations router (STORY-109)
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

import logging

from fastapi import FastAPI

from fleet.src.api.fleet import router as fleet_router
from fleet.src.api.health import router as health_router
from fleet.src.api.operations import router as operations_router
from fleet.src.api.units import router as units_router
from fleet.src.service import FleetService

logger = logging.getLogger(__name__)


def create_app(service: FleetService) -> FastAPI:
    """Build the API bound to *service*.

    Args:
        service: The fleet service the routes read from.

    Returns:
        FastAPI: Application with all routers registered.
    """
    app = FastAPI(
        title="Trailer Fleet Monitor API",
        description="Fleet telemetry, energy, alerts, and locations.",
        version="0.1.0",
    )
    app.state.service = service

    app.include_router(health_router)
    app.include_router(fleet_router)
    app.include_router(units_router)
    app.include_router(operations_router)

    @app.get("/")
    async def root() -> dict:
        """Root health check endpoint."""
        return {"status": "ok"}

    return app
