"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    backend: str
    endpoint_class: str
    tier: str
    policy_name: str
    http_status: int
    request_id: str
    context: NotRequired[dict[str, Any]]


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


class ValidationAppError(AppError):
    """Raised when input validation fails."""


class ConfigurationAppError(AppError):
    """Raised when configuration is missing or inconsistent."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class StorageUnavailableError(AppError):
    """Raised by a counter store when its backend cannot be reached in time.

    Transient by nature. The admission engine absorbs it and degrades to the
    in-process store; callers of ``check`` never see it.
    """


class TotalOutageError(StorageUnavailableError):
    """Raised internally when the preferred and fallback stores both fail."""


class PolicyConfigurationError(ConfigurationAppError):
    """Raised at construction time when the policy table is invalid."""


class PolicyNotFoundError(ConfigurationAppError):
    """Raised when no policy maps to an endpoint class at request time."""


class InvalidIdentityError(ValidationAppError):
    """Raised when the caller passes an unusable identity."""
