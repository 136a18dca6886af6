"""Pipeline exception hierarchy."""

from __future__ import annotations


class StockmindError(Exception):
    """Base exception for pipeline failures."""


class ConfigurationError(StockmindError):
    """Raised when a run cannot start because required settings are missing."""


class SourceFetchError(StockmindError):
    """Raised when an external CSV or API source answers with an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(StockmindError):
    """Raised when a batch write to the store fails."""


class CredentialUnavailableError(StockmindError):
    """Raised when no API key can be resolved for a lookup."""


class QuotaExhaustedError(StockmindError):
    """Raised when the external token budget is at or below the safety floor."""

    def __init__(self, message: str, *, tokens_left: int | None = None) -> None:
        super().__init__(message)
        self.tokens_left = tokens_left
