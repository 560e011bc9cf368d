"""Mock order gateway for testing.

Provides a controllable test double for OrderGateway that:
- Returns configurable prices per (token, side)
- Keeps a simulated open-order list (GTC orders rest until filled)
- Returns queued acks or exceptions for submitted orders
- Tracks all method calls for assertions
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from quarterhour.client.gateway import OpenOrder, OrderAck, OrderRequest, OrderType
from quarterhour.domain.market import OrderSide


@dataclass
class MethodCall:
    """Record of a method call for assertions."""
    method: str
    args: Tuple
    result: Any = None


AckOrError = Union[OrderAck, Exception]


class MockOrderGateway:
    """Controllable test double for OrderGateway.

    Usage:
        gateway = MockOrderGateway()
        gateway.set_price("up-token", OrderSide.BUY, 97)
        gateway.set_price("up-token", OrderSide.SELL, 96)

        # Next FAK sell fills only half
        gateway.queue_ack("up-token", OrderAck(success=True, order_id="x", filled_shares=5))

        # Rest a GTC order, then simulate its fill
        gateway.fill(order_id)
    """

    def __init__(self):
        self._prices: Dict[Tuple[str, OrderSide], Union[float, Exception, None]] = {}
        self._open_orders: Dict[str, OpenOrder] = {}
        self._queued: Dict[str, List[AckOrError]] = {}
        self._fee_rate_bps: Optional[int] = 0
        self._open_orders_error: Optional[Exception] = None
        self._cancel_result = True
        self._ids = itertools.count(1)

        self.submitted: List[OrderRequest] = []
        self.cancelled: List[str] = []
        self.calls: List[MethodCall] = []

    # =========================================================================
    # Configuration Methods (for test setup)
    # =========================================================================

    def set_price(self, token_id: str, side: OrderSide, price: Union[float, Exception, None]) -> None:
        self._prices[(token_id, side)] = price

    def set_prices(self, token_id: str, bid: Optional[float], ask: Optional[float] = None) -> None:
        """Set the SELL (bid) and BUY (ask) price for a token at once."""
        self.set_price(token_id, OrderSide.SELL, bid)
        self.set_price(token_id, OrderSide.BUY, ask if ask is not None else bid)

    def queue_ack(self, token_id: str, ack: AckOrError) -> None:
        """Queue the outcome of the next order submitted for ``token_id``."""
        self._queued.setdefault(token_id, []).append(ack)

    def set_fee_rate_bps(self, rate: Optional[int]) -> None:
        self._fee_rate_bps = rate

    def set_open_orders_error(self, error: Optional[Exception]) -> None:
        self._open_orders_error = error

    def set_cancel_result(self, result: bool) -> None:
        self._cancel_result = result

    def fill(self, order_id: str) -> None:
        """Simulate a resting order being fully filled."""
        self._open_orders.pop(order_id, None)

    def fill_all(self) -> None:
        self._open_orders.clear()

    # =========================================================================
    # Assertion helpers
    # =========================================================================

    @property
    def open_order_ids(self) -> List[str]:
        return list(self._open_orders)

    def orders(self, side: Optional[OrderSide] = None, order_type: Optional[OrderType] = None) -> List[OrderRequest]:
        return [
            r for r in self.submitted
            if (side is None or r.side == side) and (order_type is None or r.order_type == order_type)
        ]

    def call_count(self, method: str) -> int:
        return sum(1 for c in self.calls if c.method == method)

    # =========================================================================
    # OrderGateway interface
    # =========================================================================

    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        self.calls.append(MethodCall("get_price", (token_id, side)))
        price = self._prices.get((token_id, side))
        if isinstance(price, Exception):
            raise price
        return price

    async def get_fee_rate_bps(self, token_id: str) -> Optional[int]:
        self.calls.append(MethodCall("get_fee_rate_bps", (token_id,)))
        return self._fee_rate_bps

    async def get_open_orders(self) -> List[OpenOrder]:
        self.calls.append(MethodCall("get_open_orders", ()))
        if self._open_orders_error is not None:
            raise self._open_orders_error
        return list(self._open_orders.values())

    async def submit_order(self, request: OrderRequest) -> OrderAck:
        self.calls.append(MethodCall("submit_order", (request,)))
        self.submitted.append(request)

        queued = self._queued.get(request.token_id)
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome.success and outcome.order_id and request.order_type == OrderType.GTC:
                self._rest(outcome.order_id, request)
            return outcome

        order_id = f"order-{next(self._ids)}"
        if request.order_type == OrderType.GTC:
            self._rest(order_id, request)
            return OrderAck(success=True, order_id=order_id, status="live")
        return OrderAck(
            success=True,
            order_id=order_id,
            filled_shares=request.shares,
            status="matched",
        )

    async def cancel_order(self, order_id: str) -> bool:
        self.calls.append(MethodCall("cancel_order", (order_id,)))
        self.cancelled.append(order_id)
        self._open_orders.pop(order_id, None)
        return self._cancel_result

    def _rest(self, order_id: str, request: OrderRequest) -> None:
        self._open_orders[order_id] = OpenOrder(
            order_id=order_id,
            token_id=request.token_id,
            side=request.side,
            price=request.price,
            shares=request.shares,
        )
