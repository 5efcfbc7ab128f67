"""Custom exception types for PR stats."""

from __future__ import annotations

from typing import Optional


class PrStatsError(Exception):
    """Base exception for all errors surfaced by PR stats."""


class ConfigurationError(PrStatsError):
    """Raised when runtime configuration values are missing or invalid."""


class AuthenticationError(PrStatsError):
    """Raised when Azure DevOps authentication credentials are unavailable or invalid."""


class ApiError(PrStatsError):
    """Raised when an Azure DevOps API request fails or returns an unexpected response."""


class TransientApiError(ApiError):
    """Raised for rate-limit and server-side responses that are worth retrying."""

    def __init__(self, message: str, status_code: int, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class DataValidationError(PrStatsError):
    """Raised when API payloads or persisted data do not meet expected constraints."""
