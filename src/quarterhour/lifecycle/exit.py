"""Exit controller: flip guard, profit target and stop loss."""

from typing import Dict, List, Optional

import structlog

from ..domain.market import MarketSnapshot, OrderSide
from ..domain.position import Position
from ..domain.results import ExitResult, ExitTrigger
from ..metrics import EXITS_TRIGGERED
from .closer import PositionCloser
from .context import LifecycleContext
from .entry import EntryController

log = structlog.get_logger()


class ExitController:
    """Evaluates exit conditions every tick.

    Conditions are checked in a fixed order and the first one that fires
    ends the evaluation:

    1. flip guard (pending): the underlying is too close to the price to
       beat while entries rest, so the entries are cancelled
    2. flip guard (filled): same, with open positions, so everything is
       sold immediately
    3. profit target: a position's bid reached the target, so maker sells
       rest at the target
    4. stop loss: a position's bid fell to the stop, so everything is sold
       immediately

    Entry placement never blocks this: only an exit already in flight does.
    """

    def __init__(
        self,
        context: LifecycleContext,
        entry: EntryController,
        closer: PositionCloser,
    ):
        self._ctx = context
        self._entry = entry
        self._closer = closer
        self._log = log.bind(component="exit", market=context.label)

    async def evaluate(self, snapshot: MarketSnapshot) -> ExitResult:
        ctx = self._ctx
        cfg = ctx.strategy

        if not cfg.enabled or not ctx.is_active:
            return ExitResult.none("trading inactive")
        market = snapshot.market
        if market is None:
            return ExitResult.none("no market")

        distance = snapshot.price_distance
        pending = [p for p in ctx.pending_entries.values() if p.market_id == market.id]
        if pending and distance is not None and distance < cfg.flip_guard_pending_distance:
            self._log.warning(
                "Flip guard: cancelling pending entries",
                distance=round(distance, 2),
                threshold=cfg.flip_guard_pending_distance,
            )
            cancelled = await self._entry.cancel_all_pending()
            EXITS_TRIGGERED.labels(market=ctx.label, trigger=ExitTrigger.FLIP_GUARD_PENDING.value).inc()
            return ExitResult(
                trigger=ExitTrigger.FLIP_GUARD_PENDING,
                reason=f"price distance {distance:.2f} < {cfg.flip_guard_pending_distance}",
                cancelled_order_ids=cancelled,
            )

        positions = ctx.ledger.positions(market.id)
        if not positions:
            return ExitResult.none("no positions")

        if ctx.exit_flag.active and not ctx.exit_flag.clear_if_stale(snapshot.now):
            return ExitResult.none("exit in flight")

        if distance is not None and distance < cfg.flip_guard_filled_distance:
            self._log.warning(
                "Flip guard: emergency close",
                distance=round(distance, 2),
                threshold=cfg.flip_guard_filled_distance,
                positions=len(positions),
            )
            return await self._taker_exit(
                ExitTrigger.FLIP_GUARD_FILLED,
                positions,
                f"flip guard: price distance {distance:.2f} < {cfg.flip_guard_filled_distance}",
                snapshot.now,
            )

        prices = await self.refresh_prices(positions)
        if prices is None:
            return ExitResult.none("exit prices unavailable")

        threshold = cfg.profit_target_price - cfg.profit_target_epsilon
        hit = _first(positions, lambda p: p.current_price is not None and p.current_price >= threshold)
        if hit is not None:
            covered = self._closer.covered_position_ids()
            uncovered = [p for p in positions if p.id not in covered]
            if not uncovered:
                return ExitResult.none("profit target sells resting")
            self._log.info(
                "Profit target reached",
                position_id=hit.id,
                price=hit.current_price,
                target=cfg.profit_target_price,
            )
            ctx.exit_flag.start(snapshot.now)
            try:
                report = await self._closer.place_profit_target_sells(
                    uncovered, cfg.profit_target_price
                )
            finally:
                ctx.exit_flag.clear()
            EXITS_TRIGGERED.labels(market=ctx.label, trigger=ExitTrigger.PROFIT_TARGET.value).inc()
            return ExitResult(
                trigger=ExitTrigger.PROFIT_TARGET,
                reason=f"profit target reached at {hit.current_price:.2f}",
                report=report,
            )

        hit = _first(positions, lambda p: p.current_price is not None and p.current_price <= cfg.stop_loss_price)
        if hit is not None:
            self._log.warning(
                "Stop loss triggered",
                position_id=hit.id,
                price=hit.current_price,
                stop_loss=cfg.stop_loss_price,
            )
            return await self._taker_exit(
                ExitTrigger.STOP_LOSS,
                positions,
                f"stop loss triggered at {hit.current_price:.2f}",
                snapshot.now,
            )

        return ExitResult.none("no exit condition")

    async def refresh_prices(self, positions: List[Position]) -> Optional[Dict[str, Optional[float]]]:
        """Mark every position to its token's current bid."""
        prices: Dict[str, Optional[float]] = {}
        try:
            for token_id in dict.fromkeys(p.token_id for p in positions):
                prices[token_id] = await self._ctx.gateway.get_price(token_id, OrderSide.SELL)
        except Exception as e:
            self._ctx.note_error("exit_prices", str(e))
            self._log.warning("Exit price fetch failed", error=str(e))
            return None

        for position in positions:
            price = prices.get(position.token_id)
            if price is not None:
                position.mark(price)
        return prices

    async def _taker_exit(
        self,
        trigger: ExitTrigger,
        positions: List[Position],
        reason: str,
        now: float,
    ) -> ExitResult:
        ctx = self._ctx
        ctx.exit_flag.start(now)
        try:
            # Shares locked in resting maker sells cannot be sold again
            cancelled = await self._closer.cancel_resting_exits([p.id for p in positions])
            report = await self._closer.close_taker(positions, reason)
        finally:
            ctx.exit_flag.clear()
        EXITS_TRIGGERED.labels(market=ctx.label, trigger=trigger.value).inc()
        return ExitResult(
            trigger=trigger,
            reason=reason,
            report=report,
            cancelled_order_ids=cancelled,
        )


def _first(positions, predicate) -> Optional[Position]:
    for position in positions:
        if predicate(position):
            return position
    return None
