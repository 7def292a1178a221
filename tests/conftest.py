"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins the environment before settings are imported: no .env loading, the
in-process counter store and known API keys.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents Pydantic from loading the .env file in tests
os.environ["TESTING"] = "true"

os.environ.setdefault("RATE_LIMIT_STORAGE", "memory")
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")

import pytest

from quota_gate.adapters.counter_store.in_memory import InMemoryCounterStore
from quota_gate.core.config import IdentityStrategy, PolicyRule
from quota_gate.services.admission_engine import AdmissionEngine
from quota_gate.services.penalty_tracker import PenaltyTracker
from quota_gate.services.policy_resolver import PolicyResolver
from quota_gate.services.violation_journal import ViolationJournal


class FakeClock:
    """Manually advanced time source returning UNIX seconds."""

    def __init__(self, start_ms: int = 0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms / 1000

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy_rules() -> list[PolicyRule]:
    return [
        PolicyRule(endpoint_class="auth-login", limit=5, window_ms=900_000),
        PolicyRule(
            endpoint_class="api",
            tier="free",
            limit=3,
            window_ms=60_000,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="api",
            tier="pro",
            limit=10,
            window_ms=60_000,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="api",
            tier="enterprise",
            limit=0,
            window_ms=60_000,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
    ]


@pytest.fixture
def resolver(policy_rules: list[PolicyRule]) -> PolicyResolver:
    return PolicyResolver(policy_rules, required_endpoint_classes=["api"])


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(shard_count=8, clock=clock)


@pytest.fixture
def engine(
    resolver: PolicyResolver,
    memory_store: InMemoryCounterStore,
    clock: FakeClock,
) -> AdmissionEngine:
    return AdmissionEngine(
        resolver=resolver,
        store=memory_store,
        penalties=PenaltyTracker(clock=clock),
        journal=ViolationJournal(capacity=50),
        clock=clock,
    )
