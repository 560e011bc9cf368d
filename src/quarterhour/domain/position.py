"""Position, order tracking and trade history types.

Sizes are in USD of collateral and prices on the 0-100 scale, so a fill of
$2 at 65 buys 2 / 0.65 = 3.077 shares.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .market import Direction, OrderSide


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def shares_for(size_usd: float, price: float) -> float:
    """Shares bought with ``size_usd`` at ``price`` (0-100 scale)."""
    if price <= 0:
        return 0.0
    return size_usd / (price / 100)


@dataclass(frozen=True)
class FilledOrder:
    """One fill contributing to a position."""

    order_id: str
    fill_price: float
    fill_size: float  # USD
    timestamp: float = field(default_factory=time.time)

    @property
    def shares(self) -> float:
        return shares_for(self.fill_size, self.fill_price)


@dataclass
class Position:
    """An open holding in one outcome token of one market.

    ``size`` and ``entry_price`` are derived from ``filled_orders`` so the
    size always equals the sum of fill sizes.
    """

    market_id: str
    token_id: str
    direction: Direction
    filled_orders: List[FilledOrder] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("pos"))
    entry_timestamp: float = field(default_factory=time.time)
    current_price: Optional[float] = None
    # Set after a partial taker exit; overrides the fill-derived share count
    shares_remaining: Optional[float] = None

    @property
    def size(self) -> float:
        return sum(f.fill_size for f in self.filled_orders)

    @property
    def entry_price(self) -> float:
        """Size-weighted average fill price."""
        size = self.size
        if size <= 0:
            return 0.0
        return sum(f.fill_price * f.fill_size for f in self.filled_orders) / size

    @property
    def shares(self) -> float:
        return sum(f.shares for f in self.filled_orders)

    @property
    def open_shares(self) -> float:
        """Shares still held, accounting for partial exits."""
        if self.shares_remaining is not None:
            return self.shares_remaining
        return self.shares

    @property
    def unrealized_pnl(self) -> float:
        entry = self.entry_price
        if self.current_price is None or entry <= 0:
            return 0.0
        return (self.current_price - entry) / entry * self.size

    def add_fill(self, fill: FilledOrder) -> None:
        self.filled_orders.append(fill)

    def mark(self, price: float) -> None:
        self.current_price = price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "market_id": self.market_id,
            "token_id": self.token_id,
            "direction": self.direction.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "shares": self.open_shares,
            "entry_timestamp": self.entry_timestamp,
            "filled_orders": [asdict(f) for f in self.filled_orders],
        }


@dataclass
class PendingEntryOrder:
    """Maker buy resting on the book, awaiting fill."""

    order_id: str
    market_id: str
    token_id: str
    direction: Direction
    size: float  # USD
    limit_price: float
    shares: float
    placed_at: float = field(default_factory=time.time)


@dataclass
class PendingExitOrder:
    """Maker sell at the profit target, covering one or more positions."""

    order_id: str
    market_id: str
    token_id: str
    position_ids: List[str]
    limit_price: float
    shares: float
    placed_at: float = field(default_factory=time.time)


class TradeStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TradeOrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


@dataclass
class Trade:
    """One entry or exit attempt, kept as trade history."""

    market_id: str
    token_id: str
    side: OrderSide
    size: float
    price: float
    status: TradeStatus
    id: str = field(default_factory=lambda: new_id("trade"))
    timestamp: float = field(default_factory=time.time)
    order_id: Optional[str] = None
    profit: Optional[float] = None
    reason: str = ""
    order_type: TradeOrderType = TradeOrderType.LIMIT
    limit_price: Optional[float] = None
    direction: Optional[Direction] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["status"] = self.status.value
        data["order_type"] = self.order_type.value
        data["direction"] = self.direction.value if self.direction else None
        return data


@dataclass
class TradingStatus:
    """Snapshot of the lifecycle manager for hosts and dashboards."""

    is_active: bool
    total_trades: int
    successful_trades: int
    failed_trades: int
    total_profit: float
    pending_entry_orders: int
    pending_exit_orders: int
    positions: List[Position]
    total_position_size: float
    wallet_balance: Optional[float]
    max_position_size: Optional[float]
    consecutive_failures: int
    circuit_breaker_tripped: bool
    last_errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "total_profit": self.total_profit,
            "pending_entry_orders": self.pending_entry_orders,
            "pending_exit_orders": self.pending_exit_orders,
            "positions": [p.to_dict() for p in self.positions],
            "total_position_size": self.total_position_size,
            "wallet_balance": self.wallet_balance,
            "max_position_size": self.max_position_size,
            "consecutive_failures": self.consecutive_failures,
            "circuit_breaker_tripped": self.circuit_breaker_tripped,
            "last_errors": dict(self.last_errors),
        }
