"""Shared state handed to the entry, exit and close components.

One context exists per lifecycle manager (one per asset), so circuit
breaker counts, in-flight flags and pending orders never leak between
markets.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from ..client.gateway import OrderGateway
from ..config import LifecycleSettings, StrategyConfig
from ..core.errors import QuarterhourError, classify_error
from ..domain.position import PendingEntryOrder, PendingExitOrder, Trade, TradeStatus
from ..metrics import ORDER_FAILURES
from ..risk.circuit_breaker import FailureCircuitBreaker
from .flags import InFlightFlag
from .ledger import PositionLedger

log = structlog.get_logger()

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class LifecycleContext:
    gateway: OrderGateway
    strategy: StrategyConfig
    settings: LifecycleSettings
    ledger: PositionLedger
    breaker: FailureCircuitBreaker
    entry_flag: InFlightFlag
    exit_flag: InFlightFlag
    label: str = ""
    is_active: bool = False
    wallet_balance: Optional[float] = None
    pending_entries: Dict[str, PendingEntryOrder] = field(default_factory=dict)
    pending_exits: Dict[str, PendingExitOrder] = field(default_factory=dict)
    trades: List[Trade] = field(default_factory=list)
    total_profit: float = 0.0
    last_errors: Dict[str, str] = field(default_factory=dict)
    # Anti-chase: price seen below entry since the last entry, per market
    seen_below_entry: Dict[str, bool] = field(default_factory=dict)
    sleep: Sleeper = asyncio.sleep
    clock: Callable[[], float] = time.time

    @classmethod
    def create(
        cls,
        gateway: OrderGateway,
        strategy: StrategyConfig,
        settings: LifecycleSettings,
        label: str = "",
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> "LifecycleContext":
        return cls(
            gateway=gateway,
            strategy=strategy,
            settings=settings,
            ledger=PositionLedger(),
            breaker=FailureCircuitBreaker(settings.max_consecutive_failures, market=label),
            entry_flag=InFlightFlag("entry", settings.max_in_flight_seconds),
            exit_flag=InFlightFlag("exit", settings.max_in_flight_seconds),
            label=label,
            sleep=sleep,
            clock=clock,
        )

    @property
    def max_position_size(self) -> Optional[float]:
        """Exposure ceiling; unknown balance means no ceiling."""
        if self.wallet_balance is None:
            return None
        return self.wallet_balance * self.strategy.max_exposure_fraction

    def record_trade(self, trade: Trade) -> None:
        self.trades.append(trade)
        if trade.status == TradeStatus.FILLED and trade.profit is not None:
            self.total_profit += trade.profit

    def record_success(self) -> None:
        self.breaker.record_success()

    def record_failure(self, operation: str, error: Exception) -> QuarterhourError:
        """Count an order failure; deactivates trading when the breaker trips."""
        classified = classify_error(error)
        self.last_errors[operation] = str(classified)
        ORDER_FAILURES.labels(
            market=self.label,
            operation=operation,
            error_type=type(classified).__name__,
        ).inc()
        if self.breaker.record_failure(f"{operation}: {classified}"):
            self.is_active = False
            log.error(
                "Trading halted by circuit breaker",
                market=self.label,
                operation=operation,
            )
        return classified

    def note_error(self, operation: str, message: str) -> None:
        """Record an error that does not count toward the circuit breaker."""
        self.last_errors[operation] = message

    async def fee_rate_bps(self, token_id: str) -> int:
        default = self.settings.default_fee_rate_bps
        try:
            rate = await self.gateway.get_fee_rate_bps(token_id)
        except Exception as e:
            log.debug("Fee rate lookup failed, using default", token_id=token_id, error=str(e))
            return default
        return rate or default
