from __future__ import annotations

from typing import Any


class QuakeTrackerError(Exception):
    """Base class for every error raised by quake_tracker."""


class UpstreamUnavailable(QuakeTrackerError):
    """Raised when the catalog service or the live feed cannot be reached."""

    def __init__(self, service: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class MalformedMessage(QuakeTrackerError):
    """Raised when a feature or live-feed payload cannot be decoded."""


class InvalidQueryParams(QuakeTrackerError):
    """Raised when query parameters are inconsistent or out of range."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []
