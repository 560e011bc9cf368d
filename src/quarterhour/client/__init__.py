"""Interfaces to the venue and the chain, plus their adapters."""

from .gateway import (
    MarketFeed,
    OpenOrder,
    OrderAck,
    OrderGateway,
    OrderRequest,
    OrderType,
    RedemptionResult,
    RedemptionStatus,
    Redeemer,
)

__all__ = [
    "MarketFeed",
    "OpenOrder",
    "OrderAck",
    "OrderGateway",
    "OrderRequest",
    "OrderType",
    "RedemptionResult",
    "RedemptionStatus",
    "Redeemer",
]
