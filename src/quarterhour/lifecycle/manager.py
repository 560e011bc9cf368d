"""Lifecycle manager for one 15-minute up/down market series.

Wires the entry controller, exit controller and position closer around a
shared context and exposes the host-facing operations: the per-tick
driver, start/stop, status, manual closes and ledger maintenance.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from ..client.gateway import OrderGateway
from ..config import LifecycleSettings, StrategyConfig
from ..core.errors import ConfigurationError, PositionNotFoundError
from ..domain.market import MarketDescriptor, MarketSnapshot
from ..domain.position import Position, Trade, TradeStatus, TradingStatus
from ..domain.results import CloseReport, TickResult
from ..metrics import CONSECUTIVE_FAILURES, EXPOSURE_USD, OPEN_POSITIONS
from .closer import PositionCloser
from .context import LifecycleContext, Sleeper
from .entry import EntryController
from .exit import ExitController

log = structlog.get_logger()


class LifecycleManager:
    """Drives the entry/exit lifecycle from a stream of market snapshots.

    Each ``on_tick`` runs in a fixed order:

    1. force-clear in-flight flags older than ``max_in_flight_seconds``
    2. reconcile resting entry and exit orders against the open-order list
    3. evaluate exits (flip guard, profit target, stop loss)
    4. evaluate a new entry, unless an exit acted this tick

    Usage:
        manager = LifecycleManager(gateway, strategy, settings, label="btc")
        manager.start_trading()
        result = await manager.on_tick(snapshot)
    """

    def __init__(
        self,
        gateway: Optional[OrderGateway],
        strategy: Optional[StrategyConfig] = None,
        settings: Optional[LifecycleSettings] = None,
        label: str = "",
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._ctx = LifecycleContext.create(
            gateway=gateway,
            strategy=strategy or StrategyConfig(),
            settings=settings or LifecycleSettings(),
            label=label,
            sleep=sleep,
            clock=clock,
        )
        self._entry = EntryController(self._ctx)
        self._closer = PositionCloser(self._ctx)
        self._exit = ExitController(self._ctx, self._entry, self._closer)
        self._active_market: Optional[MarketDescriptor] = None
        self._log = log.bind(component="lifecycle", market=label)

    @property
    def label(self) -> str:
        return self._ctx.label

    @property
    def context(self) -> LifecycleContext:
        return self._ctx

    @property
    def is_active(self) -> bool:
        return self._ctx.is_active

    @property
    def active_market(self) -> Optional[MarketDescriptor]:
        return self._active_market

    # =========================================================================
    # Tick driver
    # =========================================================================

    async def on_tick(self, snapshot: MarketSnapshot) -> TickResult:
        ctx = self._ctx
        result = TickResult()
        ctx.entry_flag.clear_if_stale(snapshot.now)
        ctx.exit_flag.clear_if_stale(snapshot.now)

        if ctx.pending_entries or ctx.pending_exits:
            open_ids = await self._open_order_ids()
            if open_ids is not None:
                opened = await self._entry.check_fills(open_ids)
                result.entry_fills = [p.id for p in opened]
                result.exit_fills = await self._closer.check_exit_fills(open_ids)

        if snapshot.market is not None:
            self._set_active_market(snapshot.market)

        result.exit = await self._exit.evaluate(snapshot)
        if not result.exit.acted:
            result.entry = await self._entry.evaluate(snapshot)

        self._update_gauges()
        return result

    async def update_market_data(
        self,
        current_price: Optional[float],
        price_to_beat: Optional[float],
        market: Optional[MarketDescriptor],
        now: Optional[float] = None,
    ) -> TickResult:
        """Build a snapshot from raw fields and run one tick."""
        snapshot = MarketSnapshot(
            current_price=current_price,
            price_to_beat=price_to_beat,
            market=market,
            now=self._ctx.clock() if now is None else now,
        )
        return await self.on_tick(snapshot)

    def _set_active_market(self, market: MarketDescriptor) -> None:
        previous = self._active_market
        self._active_market = market
        if previous is None or previous.id == market.id:
            return
        self._log.info("Active market changed", previous=previous.id, current=market.id)
        # Entries resting in the old market can no longer be managed
        stale = [t for t, p in self._ctx.pending_entries.items() if p.market_id == previous.id]
        for token_id in stale:
            del self._ctx.pending_entries[token_id]
        self._ctx.seen_below_entry.pop(previous.id, None)

    async def _open_order_ids(self) -> Optional[set]:
        try:
            orders = await self._ctx.gateway.get_open_orders()
        except Exception as e:
            self._ctx.note_error("open_orders", str(e))
            self._log.warning("Open order fetch failed", error=str(e))
            return None
        return {o.order_id for o in orders}

    def _update_gauges(self) -> None:
        ctx = self._ctx
        OPEN_POSITIONS.labels(market=ctx.label).set(len(ctx.ledger))
        EXPOSURE_USD.labels(market=ctx.label).set(ctx.ledger.total_exposure())
        CONSECUTIVE_FAILURES.labels(market=ctx.label).set(ctx.breaker.consecutive_failures)

    # =========================================================================
    # Start / stop
    # =========================================================================

    def start_trading(self) -> None:
        """Activate trading. Also the only way to clear a tripped breaker."""
        ctx = self._ctx
        if ctx.gateway is None:
            raise ConfigurationError("order gateway is not configured")
        ctx.strategy.validate()

        ctx.breaker.reset()
        ctx.is_active = True
        self._log.info("Trading started", **ctx.strategy.to_dict())

    def stop_trading(self) -> None:
        """Deactivate trading and forget resting orders.

        Resting orders are not cancelled on the venue; positions stay in the
        ledger so they can still be closed manually or redeemed.
        """
        ctx = self._ctx
        ctx.is_active = False
        ctx.entry_flag.clear()
        ctx.exit_flag.clear()
        ctx.pending_entries.clear()
        ctx.pending_exits.clear()
        ctx.breaker.record_success()
        self._log.info("Trading stopped", positions=len(ctx.ledger))

    # =========================================================================
    # Status and configuration
    # =========================================================================

    def get_status(self) -> TradingStatus:
        ctx = self._ctx
        trades = ctx.trades
        return TradingStatus(
            is_active=ctx.is_active,
            total_trades=len(trades),
            successful_trades=sum(1 for t in trades if t.status == TradeStatus.FILLED),
            failed_trades=sum(1 for t in trades if t.status == TradeStatus.FAILED),
            total_profit=ctx.total_profit,
            pending_entry_orders=len(ctx.pending_entries),
            pending_exit_orders=len(ctx.pending_exits),
            positions=ctx.ledger.positions(),
            total_position_size=ctx.ledger.total_exposure(),
            wallet_balance=ctx.wallet_balance,
            max_position_size=ctx.max_position_size,
            consecutive_failures=ctx.breaker.consecutive_failures,
            circuit_breaker_tripped=ctx.breaker.tripped,
            last_errors=dict(ctx.last_errors),
        )

    def get_trades(self) -> List[Trade]:
        return list(self._ctx.trades)

    def clear_trades(self) -> None:
        self._ctx.trades.clear()

    def get_strategy_config(self) -> StrategyConfig:
        return self._ctx.strategy

    def set_strategy_config(self, **changes: Any) -> StrategyConfig:
        """Apply a partial config update. Invalid updates leave the config as is."""
        updated = self._ctx.strategy.with_changes(**changes)
        updated.validate()
        self._ctx.strategy = updated
        self._log.info("Strategy config updated", **changes)
        return updated

    def set_wallet_balance(self, balance: Optional[float]) -> None:
        self._ctx.wallet_balance = balance

    def get_last_errors(self) -> Dict[str, str]:
        return dict(self._ctx.last_errors)

    # =========================================================================
    # Positions
    # =========================================================================

    def get_positions(self) -> List[Position]:
        return self._ctx.ledger.positions()

    def get_active_positions(self, market_id: Optional[str] = None) -> List[Position]:
        """Positions in ``market_id``, or in the active market when omitted."""
        if market_id is None:
            if self._active_market is None:
                return []
            market_id = self._active_market.id
        return self._ctx.ledger.positions(market_id)

    def remove_positions_by_ids(self, position_ids: Iterable[str]) -> List[str]:
        """Drop positions settled elsewhere (redemption). Unknown ids are ignored."""
        removed = self._ctx.ledger.remove_by_ids(position_ids)
        if removed:
            self._update_gauges()
        return removed

    async def close_position_manually(
        self,
        position_id: str,
        reason: str = "manual close",
        stop_loss: bool = False,
    ) -> CloseReport:
        """Close one position in the active market at the current bid.

        Large positions are sold in parts unless this is a stop loss.
        """
        ctx = self._ctx
        position = ctx.ledger.get(position_id)
        if position is None:
            raise PositionNotFoundError(f"position {position_id} not found")
        if self._active_market is None or position.market_id != self._active_market.id:
            raise PositionNotFoundError(f"position {position_id} is not in the active market")

        ctx.exit_flag.start(ctx.clock())
        try:
            await self._closer.cancel_resting_exits([position.id])
            if stop_loss:
                report = await self._closer.close_taker([position], reason)
            else:
                report = await self._closer.close_position_split(position, reason)
        finally:
            ctx.exit_flag.clear()
        self._update_gauges()
        self._log.info(
            "Manual close finished",
            position_id=position_id,
            success=report.success,
            profit=round(report.realized_profit, 4),
        )
        return report

    async def close_all_positions_manually(self, reason: str = "manual close all") -> CloseReport:
        """Close every position in the active market with taker orders."""
        ctx = self._ctx
        positions = self.get_active_positions()
        if not positions:
            return CloseReport(reason=reason)

        ctx.exit_flag.start(ctx.clock())
        try:
            await self._closer.cancel_resting_exits([p.id for p in positions])
            report = await self._closer.close_taker(positions, reason)
        finally:
            ctx.exit_flag.clear()
        self._update_gauges()
        self._log.info(
            "Manual close all finished",
            closed=len(report.closed_ids),
            failed=len(report.failed_ids),
            profit=round(report.realized_profit, 4),
        )
        return report
