"""Rate limiting dependency for FastAPI routes.

This module wires the admission engine into the HTTP layer. The engine only
produces decision metadata; turning it into headers and 429 responses happens
here.

Design goals:
- Minimal coupling: routes declare an endpoint class via a dependency only.
- Explicit state: the engine lives on ``app.state`` (built by the app factory),
  so several independently configured apps can coexist, e.g. in tests.
- Identity by policy: the resolved policy says whether to count by IP, user id
  or email. User id and email are expected on ``request.state`` from the
  upstream auth layer; when absent the client IP is used.
"""

from __future__ import annotations

import math
from typing import Callable

from fastapi import HTTPException, Request, status

from quota_gate.core.config import WILDCARD_TIER, IdentityStrategy, settings
from quota_gate.services.admission_engine import AdmissionEngine, AdmissionResult
from quota_gate.services.policy_resolver import Policy, normalize_tier


def get_admission_engine(request: Request) -> AdmissionEngine:
    """Return the engine owned by the running application."""

    return request.app.state.admission_engine


def resolve_identity(request: Request, policy: Policy) -> str:
    """Derive the identity the policy counts against.

    Args:
        request: FastAPI request.
        policy: Policy governing the route.

    Returns:
        str: User id, email or client IP.
    """

    value: object | None = None
    if policy.identity_strategy is IdentityStrategy.USER_ID:
        value = getattr(request.state, "user_id", None)
    elif policy.identity_strategy is IdentityStrategy.EMAIL:
        value = getattr(request.state, "email", None)

    if value:
        return str(value)
    return request.client.host if request.client else "unknown"


def build_rate_limit_headers(result: AdmissionResult) -> dict[str, str]:
    """Serialize an admission result into standard rate limit headers."""

    if result.unlimited:
        headers = {
            "X-RateLimit-Limit": "unlimited",
            "X-RateLimit-Remaining": "unlimited",
            "X-RateLimit-Reset": str(result.reset_epoch_seconds),
        }
    else:
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_epoch_seconds),
            "X-RateLimit-Policy": f"{result.limit};w={result.window_ms // 1000}",
        }

    if result.retry_after_ms is not None:
        # A retry before the window resets is denied again, whatever the penalty.
        wait_ms = max(result.retry_after_ms, result.reset_in_ms)
        headers["Retry-After"] = str(max(1, math.ceil(wait_ms / 1000)))
    return headers


def build_rate_limit_detail(
    result: AdmissionResult,
    policy: Policy,
    tier: str | None,
    upgrade: Policy | None,
) -> dict[str, object]:
    """Body of a 429 response: what was exceeded and when it opens again."""

    detail: dict[str, object] = {
        "message": "Rate limit exceeded. Try again later.",
        "policy_name": result.policy_name,
        "limit": result.limit,
        "reset": result.reset_epoch_seconds,
        "reset_in": max(0, math.ceil(result.reset_in_ms / 1000)),
        "retry_after_ms": result.retry_after_ms,
        "tier": normalize_tier(tier) or (None if policy.tier == WILDCARD_TIER else policy.tier),
    }
    if upgrade is not None:
        detail["upgrade_to"] = upgrade.tier
    return detail


def enforce_rate_limit(endpoint_class: str) -> Callable[[Request], None]:
    """Build a dependency enforcing the policy of ``endpoint_class``.

    The dependency is sync on purpose: FastAPI runs it in the threadpool, so a
    slow Redis round-trip never blocks the event loop. Headers for admitted
    requests are attached by ``rate_limit_headers_middleware``.

    Usage:
        @router.get("/things", dependencies=[Depends(enforce_rate_limit("api"))])

    Raises:
        HTTPException: 429 Too Many Requests when the request is denied.
    """

    def _enforce(request: Request) -> None:
        if not settings.rate_limit.enabled:
            return

        engine = get_admission_engine(request)
        tier = getattr(request.state, "subscription_tier", None)
        policy = engine.resolver.resolve(endpoint_class, tier)
        identity = resolve_identity(request, policy)

        result = engine.check(identity, endpoint_class, tier)
        request.state.rate_limit = result
        if result.allowed:
            return

        headers = build_rate_limit_headers(result) if settings.rate_limit.include_headers else None
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=build_rate_limit_detail(result, policy, tier, engine.resolver.upgrade_for(policy)),
            headers=headers,
        )

    return _enforce
