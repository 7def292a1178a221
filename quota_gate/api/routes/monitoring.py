from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, Response, status

from quota_gate.core.auth import verify_api_key
from quota_gate.core.rate_limit import enforce_rate_limit, get_admission_engine
from quota_gate.schemas.rate_limit import (
    RateLimitHealthResponse,
    ResetRequest,
    UsageStatusResponse,
    ViolationOut,
    ViolationsResponse,
)

router = APIRouter(
    prefix="/rate-limit",
    tags=["Rate Limit"],
    dependencies=[Depends(verify_api_key), Depends(enforce_rate_limit("api"))],
)


@router.get("/violations", response_model=ViolationsResponse)
def list_violations(
    request: Request,
    limit: int = Query(100, ge=1, le=1000, description="Maximum records to return."),
) -> ViolationsResponse:
    """Return the most recent rate limit violations, newest first."""

    records = get_admission_engine(request).recent_violations(limit)
    return ViolationsResponse(
        violations=[ViolationOut(**record.to_dict()) for record in records],
        total=len(records),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.delete("/violations", status_code=status.HTTP_204_NO_CONTENT)
def clear_violations(request: Request) -> Response:
    """Empty the violation journal."""

    get_admission_engine(request).clear_violations()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/health", response_model=RateLimitHealthResponse)
def rate_limit_health(request: Request) -> RateLimitHealthResponse:
    """Report whether the preferred counter store answers and how often we degraded."""

    health = get_admission_engine(request).health()
    return RateLimitHealthResponse(**asdict(health))


@router.get("/status", response_model=UsageStatusResponse)
def usage_status(
    request: Request,
    identity: str = Query(..., min_length=1, max_length=512),
    endpoint_class: str = Query(..., min_length=1),
    tier: str | None = Query(None),
) -> UsageStatusResponse:
    """Show an identity's usage of the current window without counting a request."""

    usage = get_admission_engine(request).status(identity, endpoint_class, tier)
    return UsageStatusResponse(**asdict(usage))


@router.post("/reset", status_code=status.HTTP_204_NO_CONTENT)
def reset_usage(request: Request, payload: ResetRequest) -> Response:
    """Clear an identity's current window and penalty history.

    Storage failures are not absorbed here and surface as 503.
    """

    get_admission_engine(request).reset(payload.identity, payload.endpoint_class, payload.tier)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
