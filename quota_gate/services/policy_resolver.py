"""Policy resolution from the static policy table.

Maps ``(endpoint_class, tier)`` to a concrete :class:`Policy`. Lookups are pure
dictionary reads against a table validated once at construction, so the
resolver is safe to share across request threads without locking.

Resolution order:
1. Exact ``(endpoint_class, tier)`` row.
2. The wildcard row ``(endpoint_class, "*")``.
3. The most restrictive tier defined for the endpoint class (fail closed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from quota_gate.core.config import WILDCARD_TIER, IdentityStrategy, PolicyRule
from quota_gate.core.errors import PolicyConfigurationError, PolicyNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Policy:
    """Immutable admission policy.

    Attributes:
        name: Stable policy name (e.g. ``auth-login``, ``api-free``).
        endpoint_class: Endpoint class the policy governs.
        tier: Tier the row was declared for (``*`` for any).
        limit: Requests admitted per window; 0 means unlimited.
        window_ms: Fixed window length in milliseconds.
        identity_strategy: How callers derive the identity for this policy.
    """

    name: str
    endpoint_class: str
    tier: str
    limit: int
    window_ms: int
    identity_strategy: IdentityStrategy

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    @property
    def rate(self) -> float:
        """Admitted requests per millisecond; unlimited sorts last."""
        if self.unlimited:
            return float("inf")
        return self.limit / self.window_ms

    @classmethod
    def from_rule(cls, rule: PolicyRule) -> "Policy":
        return cls(
            name=rule.policy_name,
            endpoint_class=rule.endpoint_class,
            tier=rule.tier,
            limit=rule.limit,
            window_ms=rule.window_ms,
            identity_strategy=rule.identity_strategy,
        )


def normalize_tier(tier: str | None) -> str | None:
    if tier is None:
        return None
    tier = tier.strip().lower()
    return tier or None


class PolicyResolver:
    """Deterministic ``(endpoint_class, tier) -> Policy`` lookup."""

    def __init__(
        self,
        rules: Iterable[PolicyRule],
        *,
        required_endpoint_classes: Iterable[str] = (),
    ) -> None:
        """Validate the table and precompute per-class fallbacks.

        Args:
            rules: Policy table rows.
            required_endpoint_classes: Classes the caller routes rely on.

        Raises:
            PolicyConfigurationError: If the table is empty, has duplicate
                ``(endpoint_class, tier)`` rows or duplicate policy names, or
                leaves a required endpoint class unmapped.
        """
        self._policies: dict[tuple[str, str], Policy] = {}
        names: set[str] = set()

        for rule in rules:
            policy = Policy.from_rule(rule)
            row = (policy.endpoint_class, policy.tier)
            if row in self._policies:
                raise PolicyConfigurationError(
                    code="duplicate_policy_row",
                    message=f"Duplicate policy row for {row[0]!r} tier {row[1]!r}",
                    details={"endpoint_class": row[0], "tier": row[1]},
                )
            if policy.name in names:
                raise PolicyConfigurationError(
                    code="duplicate_policy_name",
                    message=f"Duplicate policy name {policy.name!r}",
                    details={"policy_name": policy.name},
                )
            names.add(policy.name)
            self._policies[row] = policy

        if not self._policies:
            raise PolicyConfigurationError(
                code="empty_policy_table",
                message="Policy table is empty; refusing to start without limits",
            )

        # Most restrictive row per class; ties broken by name for determinism.
        self._strictest: dict[str, Policy] = {}
        for policy in self._policies.values():
            current = self._strictest.get(policy.endpoint_class)
            if current is None or (policy.rate, policy.name) < (current.rate, current.name):
                self._strictest[policy.endpoint_class] = policy

        missing = sorted(
            {c.strip().lower() for c in required_endpoint_classes} - set(self._strictest)
        )
        if missing:
            raise PolicyConfigurationError(
                code="unmapped_endpoint_class",
                message=f"No policy defined for endpoint classes: {', '.join(missing)}",
                details={"context": {"missing": missing}},
            )

        logger.info(
            "policy_table.loaded",
            extra={
                "policies": len(self._policies),
                "endpoint_classes": sorted(self._strictest),
            },
        )

    @property
    def policies(self) -> list[Policy]:
        return list(self._policies.values())

    @property
    def endpoint_classes(self) -> list[str]:
        return sorted(self._strictest)

    def smallest_window_ms(self) -> int:
        return min(p.window_ms for p in self._policies.values())

    def upgrade_for(self, policy: Policy) -> Policy | None:
        """Return the next less restrictive tier row of the same endpoint class."""
        candidates = [
            p
            for p in self._policies.values()
            if p.endpoint_class == policy.endpoint_class
            and p.tier != WILDCARD_TIER
            and p.rate > policy.rate
        ]
        return min(candidates, key=lambda p: (p.rate, p.name), default=None)

    def resolve(self, endpoint_class: str, tier: str | None) -> Policy:
        """Resolve the policy governing a request.

        Raises:
            PolicyNotFoundError: If the endpoint class has no row at all.
        """
        endpoint_class = endpoint_class.strip().lower()
        fallback = self._strictest.get(endpoint_class)
        if fallback is None:
            raise PolicyNotFoundError(
                code="policy_not_found",
                message=f"No policy configured for endpoint class {endpoint_class!r}",
                details={"endpoint_class": endpoint_class},
            )

        normalized = normalize_tier(tier)
        if normalized is not None:
            exact = self._policies.get((endpoint_class, normalized))
            if exact is not None:
                return exact

        wildcard = self._policies.get((endpoint_class, WILDCARD_TIER))
        if wildcard is not None:
            return wildcard

        return fallback
