"""Pydantic schemas for the rate limit monitoring endpoints."""

from pydantic import BaseModel, Field


class ViolationOut(BaseModel):
    """A single denied request from the violation journal."""

    identity: str = Field(..., description="Identity the request was counted against.")
    policy_name: str = Field(..., description="Policy that denied the request.")
    endpoint_class: str
    tier: str | None = None
    timestamp_ms: int = Field(..., description="UNIX epoch milliseconds of the denial.")
    count_at_violation: int = Field(
        ...,
        description="Window counter value when the request was denied.",
    )


class ViolationsResponse(BaseModel):
    """Recent violations, newest first."""

    violations: list[ViolationOut]
    total: int = Field(..., description="Number of violations returned.")
    timestamp: str = Field(..., description="ISO-8601 UTC time of the snapshot.")


class RateLimitHealthResponse(BaseModel):
    """Counter store health as seen by the admission engine."""

    preferred_store_healthy: bool
    degraded_calls_last_minute: int = Field(
        ...,
        ge=0,
        description="Decisions counted in the fallback store during the last 60s.",
    )
    storage: str = Field(..., description="Preferred counter store backend.")
    fallback_storage: str | None = None


class UsageStatusResponse(BaseModel):
    """Current-window usage for one identity. Reading it counts nothing."""

    policy_name: str
    limit: int = Field(..., ge=0, description="Requests per window; 0 means unlimited.")
    used: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)
    reset_at_ms: int
    window_ms: int
    consecutive_violations: int = Field(..., ge=0)
    degraded: bool = False


class ResetRequest(BaseModel):
    """Identity and policy selector for an administrative reset."""

    identity: str = Field(..., min_length=1, max_length=512)
    endpoint_class: str = Field(..., min_length=1)
    tier: str | None = None
