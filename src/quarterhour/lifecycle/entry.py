"""Entry controller: decides when to rest a maker buy and detects its fill."""

from typing import List, Optional, Tuple

import structlog

from ..client.gateway import OrderRequest, OrderType
from ..config import StrategyConfig
from ..core.errors import OrderRejectedError
from ..domain.market import Direction, MarketDescriptor, MarketSnapshot, OrderSide
from ..domain.position import (
    FilledOrder,
    PendingEntryOrder,
    Position,
    Trade,
    TradeOrderType,
    TradeStatus,
)
from ..domain.results import EntryAction, EntryResult
from ..metrics import ENTRY_FILLS, FLIP_GUARD_CANCELS, ORDERS_SUBMITTED
from .context import LifecycleContext

log = structlog.get_logger()


def entry_order_size(config: StrategyConfig, limit_price: float) -> Tuple[float, float]:
    """Return (shares, collateral_usd) for one entry at ``limit_price``."""
    if config.trade_size_unit == "shares":
        shares = config.trade_size
        return shares, shares * limit_price / 100
    return config.trade_size / (limit_price / 100), config.trade_size


class EntryController:
    """Places maker-only entry orders and turns their fills into positions.

    Entries never cross the spread: the buy rests at ``entry_price`` minus
    the configured offset and only becomes a position once it disappears
    from the venue's open-order list.
    """

    def __init__(self, context: LifecycleContext):
        self._ctx = context
        self._log = log.bind(component="entry", market=context.label)

    async def evaluate(self, snapshot: MarketSnapshot) -> EntryResult:
        """Run the entry preconditions in order and place an order if all pass."""
        ctx = self._ctx
        cfg = ctx.strategy

        if not cfg.enabled or not ctx.is_active:
            return EntryResult.skipped("trading inactive")

        market = snapshot.market
        if market is None or not market.is_tradeable:
            return EntryResult.skipped("no tradeable market")
        if market.resolved:
            return EntryResult.skipped("market resolved")

        if ctx.breaker.tripped:
            return EntryResult.skipped("circuit breaker tripped")

        limit_price = max(0.0, cfg.entry_price - cfg.entry_limit_offset)
        if limit_price <= 0:
            return EntryResult.skipped("entry limit price is zero")
        shares, collateral = entry_order_size(cfg, limit_price)

        if ctx.wallet_balance is not None and ctx.wallet_balance < collateral:
            ctx.note_error("entry", f"insufficient balance for ${collateral:.2f}")
            self._log.warning(
                "Entry skipped: insufficient balance",
                balance=ctx.wallet_balance,
                required=round(collateral, 2),
            )
            return EntryResult.skipped("insufficient balance")

        max_size = ctx.max_position_size
        if max_size is not None:
            exposure = ctx.ledger.total_exposure(market.id)
            if exposure >= max_size:
                return EntryResult.skipped("max position size reached")
            if exposure + collateral > max_size:
                return EntryResult.skipped("next trade would exceed max position size")

        if cfg.price_difference is not None:
            distance = snapshot.price_distance
            if distance is None:
                return EntryResult.skipped("price data unavailable")
            if distance < cfg.price_difference:
                return EntryResult.skipped("price difference below minimum")

        time_remaining = snapshot.time_remaining
        if time_remaining is None or time_remaining <= 0:
            return EntryResult.skipped("market timing unavailable")
        if time_remaining >= cfg.entry_time_remaining_max:
            return EntryResult.skipped("outside entry window")

        if ctx.entry_flag.active:
            return EntryResult.skipped("entry order in flight")

        prices = await self._entry_prices(market)
        if prices is None:
            return EntryResult.skipped("entry prices unavailable")
        up_price, down_price = prices

        direction = self._choose_direction(cfg, up_price, down_price)
        holding = bool(ctx.ledger.positions(market.id))

        if direction is None:
            quoted = [p for p in (up_price, down_price) if p is not None]
            if holding and quoted and max(quoted) < cfg.entry_price:
                ctx.seen_below_entry[market.id] = True
            return EntryResult.skipped("no side at entry price")

        if holding and not ctx.seen_below_entry.get(market.id, False):
            return EntryResult.skipped("waiting for price to dip below entry")

        token_id = market.token_for(direction)
        if token_id in ctx.pending_entries:
            return EntryResult.skipped("entry already pending for token")

        return await self._place(market, direction, token_id, limit_price, shares, collateral)

    async def _entry_prices(
        self, market: MarketDescriptor
    ) -> Optional[Tuple[Optional[float], Optional[float]]]:
        gateway = self._ctx.gateway
        try:
            up = await gateway.get_price(market.up_token, OrderSide.BUY)
            down = await gateway.get_price(market.down_token, OrderSide.BUY)
        except Exception as e:
            self._ctx.note_error("entry_prices", str(e))
            self._log.warning("Entry price fetch failed", error=str(e))
            return None
        if up is None and down is None:
            return None
        return up, down

    @staticmethod
    def _choose_direction(
        config: StrategyConfig,
        up_price: Optional[float],
        down_price: Optional[float],
    ) -> Optional[Direction]:
        up_ok = up_price is not None and up_price >= config.entry_price
        down_ok = down_price is not None and down_price >= config.entry_price
        if up_ok and down_ok:
            return Direction(config.entry_priority)
        if up_ok:
            return Direction.UP
        if down_ok:
            return Direction.DOWN
        return None

    async def _place(
        self,
        market: MarketDescriptor,
        direction: Direction,
        token_id: str,
        limit_price: float,
        shares: float,
        collateral: float,
    ) -> EntryResult:
        ctx = self._ctx
        fee_rate = await ctx.fee_rate_bps(token_id)
        request = OrderRequest(
            token_id=token_id,
            side=OrderSide.BUY,
            price=limit_price,
            shares=shares,
            order_type=OrderType.GTC,
            post_only=True,
            fee_rate_bps=fee_rate,
        )

        ctx.entry_flag.start(ctx.clock())
        try:
            ack = await ctx.gateway.submit_order(request)
        except Exception as e:
            error = ctx.record_failure("entry", e)
            return self._failed(market, direction, token_id, limit_price, collateral, error)
        finally:
            ctx.entry_flag.clear()

        if not ack.success or not ack.order_id:
            error = ctx.record_failure(
                "entry", OrderRejectedError(ack.error or "no order id returned")
            )
            return self._failed(market, direction, token_id, limit_price, collateral, error)

        ctx.pending_entries[token_id] = PendingEntryOrder(
            order_id=ack.order_id,
            market_id=market.id,
            token_id=token_id,
            direction=direction,
            size=collateral,
            limit_price=limit_price,
            shares=shares,
            placed_at=ctx.clock(),
        )
        ctx.record_success()
        ctx.seen_below_entry[market.id] = False
        ORDERS_SUBMITTED.labels(market=ctx.label, side="BUY", order_type="GTC").inc()
        ctx.record_trade(
            Trade(
                market_id=market.id,
                token_id=token_id,
                side=OrderSide.BUY,
                size=collateral,
                price=limit_price,
                status=TradeStatus.PENDING,
                order_id=ack.order_id,
                reason="entry",
                order_type=TradeOrderType.LIMIT,
                limit_price=limit_price,
                direction=direction,
                timestamp=ctx.clock(),
            )
        )
        self._log.info(
            "Maker entry placed",
            direction=direction.value,
            limit_price=limit_price,
            shares=round(shares, 4),
            order_id=ack.order_id,
        )
        return EntryResult(
            action=EntryAction.PLACED,
            reason="entry price reached",
            direction=direction,
            token_id=token_id,
            order_id=ack.order_id,
            limit_price=limit_price,
            shares=shares,
        )

    def _failed(self, market, direction, token_id, limit_price, collateral, error) -> EntryResult:
        ctx = self._ctx
        ctx.record_trade(
            Trade(
                market_id=market.id,
                token_id=token_id,
                side=OrderSide.BUY,
                size=collateral,
                price=limit_price,
                status=TradeStatus.FAILED,
                reason=f"entry failed: {error}",
                order_type=TradeOrderType.LIMIT,
                limit_price=limit_price,
                direction=direction,
                timestamp=ctx.clock(),
            )
        )
        self._log.warning("Entry order failed", direction=direction.value, error=str(error))
        return EntryResult(
            action=EntryAction.FAILED,
            reason="order failed",
            direction=direction,
            token_id=token_id,
            limit_price=limit_price,
            error=str(error),
        )

    async def check_fills(self, open_order_ids: Optional[set] = None) -> List[Position]:
        """Turn pending entries that left the open-order list into positions."""
        ctx = self._ctx
        if not ctx.pending_entries:
            return []
        if open_order_ids is None:
            try:
                open_order_ids = {o.order_id for o in await ctx.gateway.get_open_orders()}
            except Exception as e:
                ctx.note_error("open_orders", str(e))
                self._log.warning("Open order fetch failed", error=str(e))
                return []

        opened = []
        for token_id, pending in list(ctx.pending_entries.items()):
            if pending.order_id in open_order_ids:
                continue
            del ctx.pending_entries[token_id]
            position = Position(
                market_id=pending.market_id,
                token_id=token_id,
                direction=pending.direction,
                entry_timestamp=ctx.clock(),
            )
            position.add_fill(
                FilledOrder(
                    order_id=pending.order_id,
                    fill_price=pending.limit_price,
                    fill_size=pending.size,
                    timestamp=ctx.clock(),
                )
            )
            ctx.ledger.add(position)
            ctx.record_success()
            self._set_trade_status(pending.order_id, TradeStatus.FILLED)
            ENTRY_FILLS.labels(market=ctx.label).inc()
            self._log.info(
                "Maker entry filled",
                order_id=pending.order_id,
                position_id=position.id,
                direction=pending.direction.value,
            )
            opened.append(position)
        return opened

    async def cancel_all_pending(self) -> List[str]:
        """Cancel every resting entry. Tracking is cleared even if a cancel fails."""
        ctx = self._ctx
        cancelled = []
        for token_id, pending in list(ctx.pending_entries.items()):
            try:
                ok = await ctx.gateway.cancel_order(pending.order_id)
            except Exception as e:
                ok = False
                self._log.warning("Cancel failed", order_id=pending.order_id, error=str(e))
            if not ok:
                ctx.note_error("cancel", f"cancel failed for {pending.order_id}")
            cancelled.append(pending.order_id)
            self._set_trade_status(pending.order_id, TradeStatus.CANCELLED)
            FLIP_GUARD_CANCELS.labels(market=ctx.label).inc()
        ctx.pending_entries.clear()
        if cancelled:
            self._log.info("Pending entries cancelled", order_ids=cancelled)
        return cancelled

    def _set_trade_status(self, order_id: str, status: TradeStatus) -> None:
        for trade in reversed(self._ctx.trades):
            if trade.order_id == order_id:
                trade.status = status
                return
