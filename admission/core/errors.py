"""Application-level exception types.

This module defines domain errors used across the policy, HTTP wiring and
setup code, enabling consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    hint: str
    rule: str


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationAppError(AppError):
    """Raised at setup time when rate limit configuration is invalid."""


class AuthenticationAppError(AppError):
    """Raised when authentication fails (bad or unconfigured API key)."""


class AuthRequiredAppError(AuthenticationAppError):
    """Raised when a principal-scoped limit is hit without an authenticated caller."""


@dataclass
class RateLimitExceededAppError(AppError):
    """Raised by the HTTP layer when a request is rejected by admission control.

    Attributes:
        retry_after: Seconds the client should wait before retrying.
        headers: Rate limit headers to attach to the rejection response.
    """

    retry_after: int = 1
    headers: dict[str, str] = field(default_factory=dict)
