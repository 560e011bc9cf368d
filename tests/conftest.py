"""Shared pytest fixtures for lifecycle tests.

This file provides common fixtures used across all test modules:
- Mock order gateway
- Deterministic clock and recording sleep
- A default market
- A started LifecycleManager wired to the mocks
"""

import pytest

from quarterhour.config import LifecycleSettings, StrategyConfig
from quarterhour.domain.market import MarketDescriptor
from quarterhour.lifecycle.manager import LifecycleManager
from tests.fixtures.markets import FakeClock, RecordingSleep, make_market
from tests.fixtures.mock_gateway import MockOrderGateway


# =============================================================================
# Time
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)


# =============================================================================
# Gateway and configuration
# =============================================================================

@pytest.fixture
def gateway() -> MockOrderGateway:
    """Create a fresh MockOrderGateway for each test."""
    return MockOrderGateway()


@pytest.fixture
def strategy() -> StrategyConfig:
    return StrategyConfig(enabled=True)


@pytest.fixture
def settings() -> LifecycleSettings:
    return LifecycleSettings()


# =============================================================================
# Market fixtures
# =============================================================================

@pytest.fixture
def market() -> MarketDescriptor:
    return make_market()


@pytest.fixture
def manager(gateway, strategy, settings, sleep, clock) -> LifecycleManager:
    """A started LifecycleManager for the btc series."""
    manager = LifecycleManager(
        gateway,
        strategy=strategy,
        settings=settings,
        label="btc",
        sleep=sleep,
        clock=clock,
    )
    manager.start_trading()
    return manager
