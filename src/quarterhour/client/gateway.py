"""Narrow interfaces between the lifecycle and the outside world.

The lifecycle only ever talks to these protocols. Vendor SDKs are adapted
to them at the boundary (see ``polymarket.py``, ``gamma.py``, ``ctf.py``),
and tests substitute in-memory doubles.

All prices crossing these interfaces are on the 0-100 scale.
"""

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from ..domain.market import MarketDescriptor, OrderSide


class OrderType(str, Enum):
    """Time in force."""

    GTC = "GTC"  # Rests on the book (maker)
    FAK = "FAK"  # Fill what matches now, cancel the rest (taker)


@dataclass(frozen=True)
class OrderRequest:
    """An order the lifecycle wants placed.

    Attributes:
        token_id: Outcome token to trade.
        side: BUY or SELL.
        price: Limit price on the 0-100 scale.
        shares: Number of outcome shares.
        order_type: GTC for resting maker orders, FAK for immediate taker orders.
        post_only: Reject instead of crossing the spread (maker-only).
        fee_rate_bps: Fee rate to sign the order with.
    """

    token_id: str
    side: OrderSide
    price: float
    shares: float
    order_type: OrderType = OrderType.GTC
    post_only: bool = False
    fee_rate_bps: Optional[int] = None

    @property
    def notional(self) -> float:
        return self.shares * self.price / 100


@dataclass(frozen=True)
class OrderAck:
    """Gateway's answer to an order submission.

    ``filled_shares`` is only meaningful for FAK orders: how much matched
    immediately. ``None`` means the venue did not say.
    """

    success: bool
    order_id: Optional[str] = None
    filled_shares: Optional[float] = None
    status: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class OpenOrder:
    order_id: str
    token_id: str = ""
    side: str = ""
    price: Optional[float] = None
    shares: Optional[float] = None


class RedemptionStatus(str, Enum):
    """Status of a redemption attempt."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class RedemptionResult:
    status: RedemptionStatus
    condition_id: str
    index_set: int
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == RedemptionStatus.SUCCESS


class OrderGateway(Protocol):
    """Order placement and market prices for outcome tokens."""

    @abstractmethod
    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        """Best price to trade ``side`` now: BUY gets the ask, SELL gets the bid."""
        ...

    @abstractmethod
    async def get_fee_rate_bps(self, token_id: str) -> Optional[int]:
        ...

    @abstractmethod
    async def get_open_orders(self) -> List[OpenOrder]:
        ...

    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> OrderAck:
        """Submit an order.

        May raise; callers classify exceptions with ``classify_error``.
        """
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        ...


class MarketFeed(Protocol):
    """Source of market descriptors (identity, tokens, resolution)."""

    @abstractmethod
    async def fetch_market(self, market_id: str) -> Optional[MarketDescriptor]:
        ...


class Redeemer(Protocol):
    """Converts winning outcome tokens back into collateral."""

    @abstractmethod
    async def redeem(self, condition_id: str, index_set: int) -> RedemptionResult:
        ...
