"""Shared fixtures for Routewise tests."""

from datetime import datetime, timezone

import pytest

from routewise.core.config import Settings, ServerSettings, _default_tiers
from routewise.optimization.selector import AccuracyCostSelector
from routewise.policy.matcher import PolicyMatcher
from routewise.policy.store import InMemoryPolicyBackend, PolicyStore
from routewise.quota.ledger import QuotaLedger
from routewise.quota.store import InMemoryQuotaStore
from routewise.quota.tiers import TierTable
from routewise.routing.catalog import ProviderCatalog
from routewise.routing.router import Router
from routewise.utils.clock import ManualClock
from routewise.utils.metrics import RoutingMetrics


@pytest.fixture
def clock():
    """A manual clock at 10:00 UTC on 2024-01-01."""
    return ManualClock(datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def tier_table():
    return TierTable.from_settings(_default_tiers(), default_tier="free")


@pytest.fixture
def quota_store():
    return InMemoryQuotaStore()


@pytest.fixture
def ledger(quota_store, tier_table, clock):
    return QuotaLedger(quota_store, tier_table, clock=clock)


@pytest.fixture
def policy_store(clock):
    return PolicyStore(InMemoryPolicyBackend(), clock=clock)


@pytest.fixture
def matcher(policy_store, clock):
    return PolicyMatcher(policy_store, clock=clock)


@pytest.fixture
def selector():
    return AccuracyCostSelector()


@pytest.fixture
def metrics():
    return RoutingMetrics()


@pytest.fixture
def router(matcher, ledger, selector, metrics, clock):
    return Router(
        matcher,
        ledger,
        selector,
        catalog=ProviderCatalog(),
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def settings():
    """Settings with an admin key and everything kept in memory."""
    return Settings(server=ServerSettings(admin_api_key="test-admin-key"))
