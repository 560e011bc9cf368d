"""Redemption monitor: turns positions in resolved markets back into collateral.

Positions that are never sold stay in the ledger after their market
resolves. The monitor periodically groups them by market, asks the market
feed whether the market resolved and, if so, redeems each outcome held on
the conditional-token contract before removing the positions.
"""

import asyncio
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Set

import structlog

from .client.gateway import MarketFeed, Redeemer
from .domain.position import Position
from .domain.results import RedemptionReport
from .metrics import REDEMPTIONS

log = structlog.get_logger()

PositionsProvider = Callable[[], List[Position]]
PositionsRemover = Callable[[Iterable[str]], List[str]]


class RedemptionMonitor:
    """Periodic redemption of positions in resolved markets.

    Redemption never blocks the trading loop: it runs in its own task and
    only touches the ledger through ``remove_positions``, which ignores ids
    that were already closed.
    """

    def __init__(
        self,
        feed: MarketFeed,
        redeemer: Redeemer,
        get_positions: PositionsProvider,
        remove_positions: PositionsRemover,
        interval: float = 60.0,
    ):
        self._feed = feed
        self._redeemer = redeemer
        self._get_positions = get_positions
        self._remove_positions = remove_positions
        self._interval = interval
        self._redeemed: Set[str] = set()
        self._should_run = False
        self._task: Optional[asyncio.Task] = None
        self._log = log.bind(component="redemption")

    @property
    def redeemed_position_ids(self) -> Set[str]:
        return set(self._redeemed)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._should_run = True
        self._task = asyncio.create_task(self._check_loop())
        self._log.info("Redemption monitor started", interval=self._interval)

    async def stop(self) -> None:
        self._should_run = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._log.info("Redemption monitor stopped", redeemed=len(self._redeemed))

    async def _check_loop(self) -> None:
        while self._should_run:
            try:
                await self.run_check()
            except Exception as e:
                self._log.error("Redemption check failed", error=str(e))
            await asyncio.sleep(self._interval)

    async def run_check(self) -> RedemptionReport:
        """Redeem every position whose market has resolved."""
        report = RedemptionReport()
        by_market: Dict[str, List[Position]] = OrderedDict()
        for position in self._get_positions():
            if position.id in self._redeemed:
                continue
            by_market.setdefault(position.market_id, []).append(position)

        for market_id, positions in by_market.items():
            report.checked_markets.append(market_id)
            try:
                market = await self._feed.fetch_market(market_id)
            except Exception as e:
                report.errors[market_id] = f"market lookup failed: {e}"
                self._log.warning("Market lookup failed", market_id=market_id, error=str(e))
                continue

            if market is None or not market.resolved:
                report.unresolved_markets.append(market_id)
                continue
            if not market.condition_id:
                report.errors[market_id] = "resolved market has no condition id"
                continue

            # The lookup yields to the tick loop, which may have closed some
            positions = self._still_open(positions)
            if not positions:
                continue

            redeemed = await self._redeem_market(market, positions, report)
            removed = self._remove_positions(redeemed) if redeemed else []
            if removed:
                self._redeemed.update(removed)
                report.redeemed_position_ids.extend(removed)
                report.redeemed_markets.append(market_id)

        if report.redeemed_position_ids:
            self._log.info(
                "Positions redeemed",
                markets=report.redeemed_markets,
                positions=len(report.redeemed_position_ids),
            )
        return report

    def _still_open(self, positions: List[Position]) -> List[Position]:
        open_ids = {p.id for p in self._get_positions()}
        return [p for p in positions if p.id in open_ids]

    async def _redeem_market(self, market, positions: List[Position], report: RedemptionReport) -> List[str]:
        by_index: Dict[int, List[str]] = OrderedDict()
        for position in positions:
            index_set = market.index_set_for(position.token_id)
            if index_set is None:
                report.errors[market.id] = f"token {position.token_id} not in market"
                continue
            by_index.setdefault(index_set, []).append(position.id)

        redeemed: List[str] = []
        for index_set, position_ids in by_index.items():
            open_ids = {p.id for p in self._get_positions()}
            position_ids = [pid for pid in position_ids if pid in open_ids]
            if not position_ids:
                continue
            try:
                result = await self._redeemer.redeem(market.condition_id, index_set)
            except Exception as e:
                REDEMPTIONS.labels(status="error").inc()
                report.errors[market.id] = str(e)
                self._log.error("Redemption failed", market_id=market.id, index_set=index_set, error=str(e))
                continue

            if not result.success:
                REDEMPTIONS.labels(status="failed").inc()
                report.errors[market.id] = result.error or "redemption failed"
                self._log.error(
                    "Redemption failed",
                    market_id=market.id,
                    index_set=index_set,
                    error=result.error,
                )
                continue

            REDEMPTIONS.labels(status="success").inc()
            self._log.info(
                "Redemption confirmed",
                market_id=market.id,
                index_set=index_set,
                tx_hash=result.tx_hash,
            )
            redeemed.extend(position_ids)
        return redeemed
