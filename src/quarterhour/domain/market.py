"""Market data types for 15-minute up/down markets."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class Direction(str, Enum):
    """Outcome side of a binary up/down market."""

    UP = "UP"
    DOWN = "DOWN"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class MarketDescriptor:
    """Identity and resolution state of one 15-minute market.

    token_ids[0] is the UP outcome token and token_ids[1] the DOWN token,
    matching the order of the market's clobTokenIds.
    """

    id: str
    token_ids: Tuple[str, ...] = ()
    end_timestamp: Optional[float] = None  # epoch seconds
    resolved: bool = False
    condition_id: Optional[str] = None
    question: str = ""

    @property
    def is_tradeable(self) -> bool:
        return len(self.token_ids) >= 2

    @property
    def up_token(self) -> Optional[str]:
        return self.token_ids[0] if len(self.token_ids) > 0 else None

    @property
    def down_token(self) -> Optional[str]:
        return self.token_ids[1] if len(self.token_ids) > 1 else None

    def token_for(self, direction: Direction) -> Optional[str]:
        return self.up_token if direction == Direction.UP else self.down_token

    def direction_for(self, token_id: str) -> Optional[Direction]:
        if token_id == self.up_token:
            return Direction.UP
        if token_id == self.down_token:
            return Direction.DOWN
        return None

    def index_set_for(self, token_id: str) -> Optional[int]:
        """CTF index set for redeeming ``token_id`` (1 = UP, 2 = DOWN)."""
        try:
            return 1 << self.token_ids.index(token_id)
        except ValueError:
            return None


@dataclass(frozen=True)
class MarketSnapshot:
    """Everything the lifecycle needs to know about the market on one tick.

    Attributes:
        current_price: Latest underlying asset price in USD.
        price_to_beat: Underlying price at market open (resolution reference).
        market: The active market, if one is known.
        now: Epoch seconds of this snapshot. Injected so tests control time.
    """

    current_price: Optional[float] = None
    price_to_beat: Optional[float] = None
    market: Optional[MarketDescriptor] = None
    now: float = field(default_factory=time.time)

    @property
    def time_remaining(self) -> Optional[float]:
        """Seconds until the market ends, floored at zero."""
        if self.market is None or self.market.end_timestamp is None:
            return None
        return max(0.0, self.market.end_timestamp - self.now)

    @property
    def price_distance(self) -> Optional[float]:
        """Absolute USD distance between the underlying and the price to beat."""
        if self.current_price is None or self.price_to_beat is None:
            return None
        return abs(self.price_to_beat - self.current_price)
