"""Fixed-window accounting.

Every request for the same ``(policy, identity)`` whose timestamp falls in the
same window index shares one counter; the window resets hard at each boundary.
A burst of up to ``2 * limit`` can straddle a boundary. That imprecision is
accepted here; a sliding-window approximation could replace this class without
touching the counter stores or the admission engine.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum

from quota_gate.services.policy_resolver import Policy


class Decision(str, Enum):
    ADMIT = "admit"
    DENY = "deny"


@dataclass(frozen=True)
class WindowBounds:
    """Window position for a timestamp.

    Attributes:
        index: ``now_ms // window_ms``.
        start_ms: UNIX epoch milliseconds when the window opened.
        end_ms: UNIX epoch milliseconds when the window resets.
    """

    index: int
    start_ms: int
    end_ms: int


class WindowAccountant:
    """Computes window keys and turns raw counts into decisions."""

    def __init__(self, *, key_prefix: str = "quota:") -> None:
        self._key_prefix = key_prefix

    @staticmethod
    def window_bounds(policy: Policy, now_ms: int) -> WindowBounds:
        index = now_ms // policy.window_ms
        start_ms = index * policy.window_ms
        return WindowBounds(index=index, start_ms=start_ms, end_ms=start_ms + policy.window_ms)

    def window_key(self, policy: Policy, identity: str, now_ms: int) -> str:
        """Build the counter key for ``identity`` under ``policy`` at ``now_ms``.

        The policy name and window index stay readable for operators; the
        identity only appears hashed.
        """
        index = self.window_bounds(policy, now_ms).index
        digest = hashlib.sha256(
            f"{policy.name}\x00{identity}\x00{index}".encode("utf-8", errors="surrogatepass")
        ).hexdigest()
        return f"{self._key_prefix}{policy.name}:{index}:{digest[:32]}"

    @staticmethod
    def decide(count: int, limit: int) -> Decision:
        """Count-then-check: the request that crosses the limit is denied.

        A ``limit`` of 0 means unlimited.
        """
        if limit == 0 or count <= limit:
            return Decision.ADMIT
        return Decision.DENY
