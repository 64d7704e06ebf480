"""Custom exception types for the GitLab MR timeline engine."""

from __future__ import annotations

from typing import Optional


class TimelineError(Exception):
    """Base exception for all recoverable timeline engine errors."""


class ConfigurationError(TimelineError):
    """Raised when runtime configuration values are missing or invalid."""


class AuthenticationError(TimelineError):
    """Raised when GitLab credentials are unavailable or rejected."""


class UpstreamError(TimelineError):
    """Raised when a GitLab API request fails or returns an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(UpstreamError):
    """Raised when a merge request (or its project) does not exist upstream."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class ValidationError(TimelineError):
    """Raised when batch input, filters, or sort options are malformed.

    Validation happens before any network I/O so a bad request never
    triggers partial fetches.
    """

    def __init__(self, field: str, constraint: str) -> None:
        super().__init__(f"Invalid value for '{field}': {constraint}")
        self.field = field
        self.constraint = constraint
