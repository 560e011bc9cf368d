"""Position closer: aggregates positions by token and sells them.

Two modes:
- maker: one post-only limit sell per token at the profit target, tracked
  until it leaves the open-order list
- taker: one immediate FAK sell per token at the current bid, used for
  stop loss, flip guard and manual closes
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

import structlog

from ..client.gateway import OrderRequest, OrderType
from ..core.errors import (
    InsufficientBalanceError,
    NoLiquidityError,
    OrderRejectedError,
    QuarterhourError,
)
from ..domain.market import OrderSide
from ..domain.position import (
    PendingExitOrder,
    Position,
    Trade,
    TradeOrderType,
    TradeStatus,
)
from ..domain.results import CloseReport
from ..metrics import (
    ORDERS_SUBMITTED,
    POSITIONS_MANUAL_INTERVENTION,
    REALIZED_PROFIT_USD,
)
from .context import LifecycleContext
from .ledger import TokenGroup, group_by_token

log = structlog.get_logger()

# Shares left below this after a partial fill count as fully sold
DUST_SHARES = 0.01


def round_shares(shares: float) -> float:
    return round(shares, 2)


@dataclass
class _SellOutcome:
    filled_shares: float = 0.0
    price: Optional[float] = None
    order_id: Optional[str] = None
    error: Optional[QuarterhourError] = None


@dataclass
class _PassResult:
    report: CloseReport
    # Position ids whose failure is worth retrying (balance errors are not)
    retryable_ids: Set[str] = field(default_factory=set)


class PositionCloser:
    def __init__(self, context: LifecycleContext):
        self._ctx = context
        self._log = log.bind(component="closer", market=context.label)

    # =========================================================================
    # Taker exits
    # =========================================================================

    async def close_taker(
        self,
        positions: List[Position],
        reason: str,
        with_retries: bool = True,
    ) -> CloseReport:
        """Sell every position immediately, one FAK order per token.

        With retries, failed tokens get one more pass after
        ``stop_loss_retry_delay`` when some tokens closed, or one emergency
        pass after ``emergency_retry_delay`` when none did. Tokens that failed
        on balance or allowance are never retried.
        """
        ctx = self._ctx
        first = await self._taker_pass(positions, reason)
        report = first.report
        if not with_retries or not first.retryable_ids:
            self._flag_manual(report)
            return report

        if report.closed_ids:
            delay = ctx.settings.stop_loss_retry_delay
            self._log.warning("Retrying failed closes", tokens=list(report.errors), delay=delay)
        else:
            delay = ctx.settings.emergency_retry_delay
            self._log.error("All closes failed, emergency retry", delay=delay)

        await ctx.sleep(delay)
        remaining = [
            p for p in positions if p.id in first.retryable_ids and p.id in ctx.ledger
        ]
        if remaining:
            second = await self._taker_pass(remaining, f"{reason} (retry)")
            report.merge(second.report)

        self._flag_manual(report)
        return report

    async def close_position_split(self, position: Position, reason: str) -> CloseReport:
        """Sell one position, splitting large ones into several taker orders."""
        ctx = self._ctx
        settings = ctx.settings
        total = round_shares(position.open_shares)
        if position.size <= settings.split_threshold or settings.split_count <= 1:
            return (await self._taker_pass([position], reason)).report

        count = settings.split_count
        part = round_shares(total / count)
        parts = [part] * (count - 1) + [round_shares(total - part * (count - 1))]

        report = CloseReport(reason=reason, tokens=[position.token_id])
        group = TokenGroup(token_id=position.token_id, positions=[position])
        sold = 0.0
        for index, shares in enumerate(parts):
            if index:
                await ctx.sleep(settings.split_delay)
            outcome = await self._sell(position.token_id, shares, reason)
            if outcome.order_id:
                report.order_ids.append(outcome.order_id)
            if outcome.error is not None:
                report.errors[position.token_id] = str(outcome.error)
                self._log.warning(
                    "Split order failed",
                    part=index + 1,
                    of=count,
                    error=str(outcome.error),
                )
                break
            sold += outcome.filled_shares
            report.realized_profit += self._book_sale(group, outcome, reason, total)

        self._settle_group(group, sold, total, report)
        return report

    async def _taker_pass(self, positions: List[Position], reason: str) -> _PassResult:
        result = _PassResult(report=CloseReport(reason=reason))
        report = result.report

        for token_id, group in group_by_token(positions).items():
            report.tokens.append(token_id)
            shares = round_shares(group.shares)
            if shares <= 0:
                report.closed_ids.extend(self._ctx.ledger.remove_by_ids(group.position_ids))
                continue

            outcome = await self._sell(token_id, shares, reason)
            if outcome.order_id:
                report.order_ids.append(outcome.order_id)
            if outcome.filled_shares > 0:
                report.realized_profit += self._book_sale(group, outcome, reason, shares)
            if outcome.error is not None:
                report.errors[token_id] = str(outcome.error)
                if not isinstance(outcome.error, InsufficientBalanceError):
                    result.retryable_ids.update(group.position_ids)
            self._settle_group(group, outcome.filled_shares, shares, report)
            if outcome.error is None and token_id in report.errors:
                # Partial fill: retry the remainder
                result.retryable_ids.update(group.position_ids)

        return result

    async def _sell(self, token_id: str, shares: float, reason: str) -> _SellOutcome:
        ctx = self._ctx
        outcome = _SellOutcome()
        try:
            price = await ctx.gateway.get_price(token_id, OrderSide.SELL)
        except Exception as e:
            outcome.error = ctx.record_failure("exit", e)
            return outcome
        if price is None or price <= 0:
            outcome.error = ctx.record_failure(
                "exit", NoLiquidityError(f"no bid for token {token_id[:10]}")
            )
            return outcome
        outcome.price = price

        request = OrderRequest(
            token_id=token_id,
            side=OrderSide.SELL,
            price=price,
            shares=shares,
            order_type=OrderType.FAK,
            fee_rate_bps=await ctx.fee_rate_bps(token_id),
        )
        self._log.info("Taker sell", token_id=token_id, shares=shares, price=price, reason=reason)

        try:
            ack = await ctx.gateway.submit_order(request)
        except Exception as e:
            outcome.error = ctx.record_failure("exit", e)
            return outcome

        outcome.order_id = ack.order_id
        if not ack.success:
            outcome.error = ctx.record_failure(
                "exit", OrderRejectedError(ack.error or "sell rejected")
            )
            return outcome

        ORDERS_SUBMITTED.labels(market=ctx.label, side="SELL", order_type="FAK").inc()
        filled = shares if ack.filled_shares is None else min(ack.filled_shares, shares)
        if filled <= 0:
            outcome.error = ctx.record_failure(
                "exit", NoLiquidityError("no orders found to match")
            )
            return outcome

        outcome.filled_shares = filled
        ctx.record_success()
        return outcome

    def _book_sale(
        self,
        group: TokenGroup,
        outcome: _SellOutcome,
        reason: str,
        requested_shares: float,
        order_type: TradeOrderType = TradeOrderType.MARKET,
    ) -> float:
        """Record the trade for a (possibly partial) sale and return its profit."""
        ctx = self._ctx
        group_shares = group.shares
        fraction = outcome.filled_shares / group_shares if group_shares > 0 else 1.0
        cost = group.cost_basis * min(1.0, fraction)
        proceeds = outcome.filled_shares * outcome.price / 100
        profit = proceeds - cost

        first = group.positions[0]
        ctx.record_trade(
            Trade(
                market_id=first.market_id,
                token_id=group.token_id,
                side=OrderSide.SELL,
                size=proceeds,
                price=outcome.price,
                status=TradeStatus.FILLED,
                order_id=outcome.order_id,
                profit=profit,
                reason=reason,
                order_type=order_type,
                limit_price=outcome.price,
                direction=first.direction,
                timestamp=ctx.clock(),
            )
        )
        REALIZED_PROFIT_USD.labels(market=ctx.label).observe(profit)
        self._log.info(
            "Sale booked",
            token_id=group.token_id,
            shares=round(outcome.filled_shares, 4),
            requested=requested_shares,
            price=outcome.price,
            profit=round(profit, 4),
        )
        return profit

    def _settle_group(
        self,
        group: TokenGroup,
        sold: float,
        requested: float,
        report: CloseReport,
    ) -> None:
        """Remove fully sold positions; shrink partially sold ones."""
        ctx = self._ctx
        remaining = requested - sold
        if sold > 0 and remaining < DUST_SHARES:
            report.closed_ids.extend(ctx.ledger.remove_by_ids(group.position_ids))
            report.errors.pop(group.token_id, None)
            return

        if sold > 0:
            keep = remaining / requested if requested > 0 else 0.0
            for position in group.positions:
                position.shares_remaining = position.open_shares * keep
            report.errors.setdefault(
                group.token_id,
                f"partial fill: {sold:.2f} of {requested:.2f} shares sold",
            )
            self._log.warning(
                "Partial close",
                token_id=group.token_id,
                sold=round(sold, 4),
                remaining=round(remaining, 4),
            )
        report.failed_ids.extend(
            pid for pid in group.position_ids if pid not in report.failed_ids
        )

    def _flag_manual(self, report: CloseReport) -> None:
        if not report.failed_ids:
            return
        POSITIONS_MANUAL_INTERVENTION.labels(market=self._ctx.label).inc(len(report.failed_ids))
        self._log.error(
            "Positions still open after close attempts, manual intervention required",
            position_ids=report.failed_ids,
            errors=report.errors,
        )

    # =========================================================================
    # Maker exits
    # =========================================================================

    async def place_profit_target_sells(
        self, positions: List[Position], target_price: float
    ) -> CloseReport:
        """Rest one post-only sell per token at ``target_price``.

        Positions stay in the ledger until the order is seen filled.
        """
        ctx = self._ctx
        report = CloseReport(reason="profit target")
        covered = self.covered_position_ids()

        for token_id, group in group_by_token(
            p for p in positions if p.id not in covered
        ).items():
            shares = round_shares(group.shares)
            if shares <= 0:
                continue
            request = OrderRequest(
                token_id=token_id,
                side=OrderSide.SELL,
                price=target_price,
                shares=shares,
                order_type=OrderType.GTC,
                post_only=True,
                fee_rate_bps=await ctx.fee_rate_bps(token_id),
            )
            try:
                ack = await ctx.gateway.submit_order(request)
                if not ack.success or not ack.order_id:
                    raise OrderRejectedError(ack.error or "no order id returned")
            except Exception as e:
                error = ctx.record_failure("exit", e)
                report.errors[token_id] = str(error)
                report.failed_ids.extend(group.position_ids)
                self._log.warning("Profit target sell failed", token_id=token_id, error=str(error))
                continue

            ctx.pending_exits[ack.order_id] = PendingExitOrder(
                order_id=ack.order_id,
                market_id=group.positions[0].market_id,
                token_id=token_id,
                position_ids=group.position_ids,
                limit_price=target_price,
                shares=shares,
                placed_at=ctx.clock(),
            )
            ctx.record_success()
            ORDERS_SUBMITTED.labels(market=ctx.label, side="SELL", order_type="GTC").inc()
            report.order_ids.append(ack.order_id)
            report.resting_order_ids.append(ack.order_id)
            self._log.info(
                "Profit target sell resting",
                token_id=token_id,
                price=target_price,
                shares=shares,
                order_id=ack.order_id,
            )
        return report

    def covered_position_ids(self) -> Set[str]:
        """Ids of positions already covered by a resting profit-target sell."""
        return {
            pid
            for pending in self._ctx.pending_exits.values()
            for pid in pending.position_ids
        }

    async def check_exit_fills(self, open_order_ids: Set[str]) -> List[str]:
        """Remove positions whose profit-target sell left the open-order list."""
        ctx = self._ctx
        removed: List[str] = []
        for order_id, pending in list(ctx.pending_exits.items()):
            if order_id in open_order_ids:
                continue
            del ctx.pending_exits[order_id]
            present = [ctx.ledger.get(pid) for pid in pending.position_ids]
            group = TokenGroup(
                token_id=pending.token_id,
                positions=[p for p in present if p is not None],
            )
            if group.positions:
                outcome = _SellOutcome(
                    filled_shares=pending.shares,
                    price=pending.limit_price,
                    order_id=order_id,
                )
                self._book_sale(
                    group, outcome, "profit target", pending.shares, TradeOrderType.LIMIT
                )
            removed.extend(ctx.ledger.remove_by_ids(pending.position_ids))
            ctx.record_success()
            self._log.info("Profit target sell filled", order_id=order_id, position_ids=pending.position_ids)
        return removed

    async def cancel_resting_exits(self, position_ids: Optional[Iterable[str]] = None) -> List[str]:
        """Cancel resting profit-target sells covering ``position_ids`` (all if None)."""
        ctx = self._ctx
        wanted = set(position_ids) if position_ids is not None else None
        cancelled = []
        for order_id, pending in list(ctx.pending_exits.items()):
            if wanted is not None and not wanted.intersection(pending.position_ids):
                continue
            try:
                await ctx.gateway.cancel_order(order_id)
            except Exception as e:
                self._log.warning("Cancel failed", order_id=order_id, error=str(e))
            del ctx.pending_exits[order_id]
            cancelled.append(order_id)
        return cancelled

