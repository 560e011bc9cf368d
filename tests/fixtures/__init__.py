"""Test fixtures for the lifecycle tests.

This package provides:
- A mock order gateway with a simulated open-order list
- Market, snapshot and position factories
- A hand-driven clock and a recording sleep
"""

from .markets import (
    CONDITION_ID,
    DOWN_TOKEN,
    MARKET_END,
    MARKET_ID,
    MARKET_START,
    UP_TOKEN,
    FakeClock,
    RecordingSleep,
    make_market,
    make_position,
    make_snapshot,
)
from .mock_gateway import MethodCall, MockOrderGateway
