"""Domain models for the position lifecycle."""

from .market import Direction, MarketDescriptor, MarketSnapshot, OrderSide
from .position import (
    FilledOrder,
    PendingEntryOrder,
    PendingExitOrder,
    Position,
    Trade,
    TradeOrderType,
    TradeStatus,
    TradingStatus,
    shares_for,
)
from .results import (
    CloseReport,
    EntryAction,
    EntryResult,
    ExitResult,
    ExitTrigger,
    RedemptionReport,
    TickResult,
)

__all__ = [
    "Direction",
    "MarketDescriptor",
    "MarketSnapshot",
    "OrderSide",
    "FilledOrder",
    "PendingEntryOrder",
    "PendingExitOrder",
    "Position",
    "Trade",
    "TradeOrderType",
    "TradeStatus",
    "TradingStatus",
    "shares_for",
    "CloseReport",
    "EntryAction",
    "EntryResult",
    "ExitResult",
    "ExitTrigger",
    "RedemptionReport",
    "TickResult",
]
