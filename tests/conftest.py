"""
FILE: tests/conftest.py
Shared fixtures for rebalance coordinator tests.
"""

from pathlib import Path

import pytest

from src.api.routers.rebalance_requests import reset_rebalance_coordinator_for_tests
from src.api.scheduler import stop_reconciliation_scheduler
from tests.factories import CoordinatorHarness, FixedClock

_REBALANCE_ENV = (
    "APP_PERSISTENCE_PROFILE",
    "REBALANCE_STORE_BACKEND",
    "REBALANCE_SQLITE_PATH",
    "REBALANCE_POSTGRES_DSN",
    "REBALANCE_WORKER_BASE_URL",
    "REBALANCE_ROLE_LIMITS_JSON",
    "REBALANCE_OPPORTUNITY_MODE",
    "REBALANCE_ACTIONS_ENABLED",
    "REBALANCE_RECONCILIATION_ENABLED",
    "REBALANCE_MIN_SUCCESS_RATIO",
    "REBALANCE_MAX_PARALLEL_DISPATCH",
)


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if (
            _has_marker(item, "unit")
            or _has_marker(item, "integration")
            or _has_marker(item, "e2e")
        ):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        if "/tests/e2e/" in path:
            item.add_marker(pytest.mark.e2e)
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def rebalance_runtime_test_harness(monkeypatch: pytest.MonkeyPatch):
    """Start every test from LOCAL defaults with fresh router singletons."""

    for name in _REBALANCE_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_rebalance_coordinator_for_tests()
    yield
    stop_reconciliation_scheduler()
    reset_rebalance_coordinator_for_tests()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def harness() -> CoordinatorHarness:
    return CoordinatorHarness()
