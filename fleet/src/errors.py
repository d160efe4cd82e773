"""
Exception hierarchy for upstream fetchers.

Upstream clients raise these; the poll coordinator turns them into per-unit
failure results so one unit's error never aborts its batch.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all fleet monitoring errors."""


class UpstreamError(FleetError):
    """Transport failure, timeout, or non-2xx response from an upstream API.

    Args:
        message: Human-readable description.
        status_code: HTTP status code when the server answered, else None.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(UpstreamError):
    """Authorization still failing after the single token refresh retry."""
