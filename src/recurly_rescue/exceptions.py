"""Centralized exception hierarchy for the recurly-rescue package.

All domain-specific exceptions inherit from ``RescueError`` so callers
can catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations

from typing import Any


class RescueError(Exception):
    """Base exception for all recurly-rescue errors."""


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(RescueError):
    """Raised when a component is constructed with invalid arguments."""


class CredentialError(ConfigurationError):
    """Raised when the API key is missing or malformed."""


# ---------------------------------------------------------------------------
# API errors
# ---------------------------------------------------------------------------


class ApiError(RescueError):
    """Base exception for failures talking to the Recurly API.

    Attributes:
        status_code: HTTP status of the failed response, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RequestError(ApiError):
    """Raised for non-retryable 4xx responses."""

    def __init__(self, message: str, status_code: int, body: Any = None) -> None:
        super().__init__(message, status_code=status_code)
        self.body = body


class ServerError(ApiError):
    """Raised for 5xx responses once retries are exhausted."""


class RateLimitExceededError(ApiError):
    """Raised after too many consecutive 429 responses."""


class RequestTimeoutError(ApiError):
    """Raised when a request exceeds the configured timeout."""


class NetworkError(ApiError):
    """Raised for transient transport failures (reset, refused, DNS)."""


# ---------------------------------------------------------------------------
# Operation errors
# ---------------------------------------------------------------------------


class DiscoveryError(RescueError):
    """Raised when candidate discovery cannot fetch a page."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AccountOperationError(RescueError):
    """Raised when an account mutation or lookup fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlanError(RescueError):
    """Raised when the rescue plan cannot be found or created."""


# ---------------------------------------------------------------------------
# State errors
# ---------------------------------------------------------------------------


class StateError(RescueError):
    """Base exception for execution state operations."""


class StateCorruptionError(StateError):
    """Raised when a state file cannot be parsed."""


class StateSchemaError(StateCorruptionError):
    """Raised when a parsed state file violates the expected schema."""


# ---------------------------------------------------------------------------
# Rollback errors
# ---------------------------------------------------------------------------


class RollbackError(RescueError):
    """Raised when a results file cannot be used to roll a run back."""
