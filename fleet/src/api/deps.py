"""
FastAPI dependency providers.

The daemon builds one FleetService and stores it on ``app.state``; route
handlers receive it through ``Depends`` so tests can install a prepared
service the same way.

CHANGELOG:
- 2026-03-07: Initial creation (STORY-110)
"""

from typing import Annotated

from fastapi import Depends, Request

from fleet.src.service import FleetService


def get_service(request: Request) -> FleetService:
    """Return the FleetService attached to the running app."""
    return request.app.state.service


# Type alias for injecting the service via FastAPI Depends().
# Usage in route handlers:
#   async def my_route(service: Service):
#       return service.fleet_latest()
Service = Annotated[FleetService, Depends(get_service)]
