"""Tests for the exit controller: flip guard, profit target and stop loss."""

import pytest

from quarterhour.client.gateway import OrderType
from quarterhour.domain.market import OrderSide
from quarterhour.domain.position import TradeOrderType, TradeStatus
from quarterhour.domain.results import ExitTrigger
from tests.fixtures.markets import DOWN_TOKEN, UP_TOKEN, make_position, make_snapshot


@pytest.fixture
def position(manager, market):
    """A $50 UP position bought at 96, held in the active market."""
    position = make_position(market_id=market.id)
    manager.context.ledger.add(position)
    return position


def bid(gateway, price, token=UP_TOKEN):
    gateway.set_price(token, OrderSide.SELL, price)


class TestProfitTarget:
    """Scenario: the bid reaches the profit target."""

    @pytest.mark.asyncio
    async def test_maker_sell_rests_until_filled(self, manager, gateway, market, clock, position):
        """Bid 99.2 rests one sell at 99; the position closes only on fill."""
        bid(gateway, 99.2)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.PROFIT_TARGET
        sells = gateway.orders(side=OrderSide.SELL)
        assert len(sells) == 1
        assert sells[0].price == 99
        assert sells[0].order_type == OrderType.GTC
        assert sells[0].post_only is True
        assert sells[0].shares == pytest.approx(52.08)
        assert position.id in manager.context.ledger

        again = await manager.on_tick(make_snapshot(market, clock.now))
        assert again.exit.acted is False
        assert len(gateway.orders(side=OrderSide.SELL)) == 1
        assert position.id in manager.context.ledger

        gateway.fill(result.exit.report.resting_order_ids[0])
        filled = await manager.on_tick(make_snapshot(market, clock.now))

        assert filled.exit_fills == [position.id]
        assert manager.get_positions() == []
        trade = manager.get_trades()[-1]
        assert trade.side == OrderSide.SELL
        assert trade.status == TradeStatus.FILLED
        assert trade.order_type == TradeOrderType.LIMIT
        assert trade.price == 99
        assert trade.profit == pytest.approx(52.08 * 0.99 - 50, abs=0.01)
        assert manager.get_status().total_profit == pytest.approx(trade.profit)

    @pytest.mark.asyncio
    async def test_epsilon_tolerance(self, manager, gateway, market, clock, position):
        """A bid within 0.01 of the target counts as reached."""
        bid(gateway, 98.995)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.PROFIT_TARGET

    @pytest.mark.asyncio
    async def test_below_target_holds(self, manager, gateway, market, clock, position):
        """A bid between stop and target does nothing."""
        bid(gateway, 97)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.acted is False
        assert gateway.orders(side=OrderSide.SELL) == []

    @pytest.mark.asyncio
    async def test_positions_are_marked(self, manager, gateway, market, clock, position):
        """Every tick refreshes the current price and unrealized PnL."""
        bid(gateway, 97)

        await manager.on_tick(make_snapshot(market, clock.now))

        assert position.current_price == 97
        assert position.unrealized_pnl == pytest.approx((97 - 96) / 96 * 50)


class TestStopLoss:
    """Scenario: the bid falls to the stop loss."""

    @pytest.mark.asyncio
    async def test_immediate_taker_sell(self, manager, gateway, market, clock, sleep, position):
        """Bid 90.5 sells at market with no delay."""
        bid(gateway, 90.5)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.STOP_LOSS
        sells = gateway.orders(side=OrderSide.SELL)
        assert len(sells) == 1
        assert sells[0].order_type == OrderType.FAK
        assert sells[0].price == 90.5
        assert sleep.delays == []
        assert result.exit.report.closed_ids == [position.id]
        assert manager.get_positions() == []

    @pytest.mark.asyncio
    async def test_fires_while_entry_in_flight(self, manager, gateway, market, clock, position):
        """An entry being placed never blocks the stop loss."""
        manager.context.entry_flag.start(clock.now)
        bid(gateway, 90)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.STOP_LOSS
        assert len(gateway.orders(side=OrderSide.SELL, order_type=OrderType.FAK)) == 1

    @pytest.mark.asyncio
    async def test_boundary_is_inclusive(self, manager, gateway, market, clock, position):
        """A bid exactly at the stop triggers."""
        bid(gateway, 91)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.STOP_LOSS

    @pytest.mark.asyncio
    async def test_cancels_resting_profit_sells_first(self, manager, gateway, market, clock, position):
        """Shares locked in a resting profit sell are freed before selling at market."""
        bid(gateway, 99.2)
        placed = await manager.on_tick(make_snapshot(market, clock.now))
        resting_id = placed.exit.report.resting_order_ids[0]

        bid(gateway, 90)
        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.STOP_LOSS
        assert result.exit.cancelled_order_ids == [resting_id]
        assert gateway.cancelled == [resting_id]
        assert manager.context.pending_exits == {}
        assert manager.get_positions() == []

    @pytest.mark.asyncio
    async def test_exit_in_flight_skips(self, manager, gateway, market, clock, position):
        """A fresh exit-in-flight flag defers exits."""
        manager.context.exit_flag.start(clock.now)
        bid(gateway, 90)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.acted is False
        assert gateway.orders(side=OrderSide.SELL) == []

    @pytest.mark.asyncio
    async def test_stale_exit_flag_is_cleared(self, manager, gateway, market, clock, position):
        """An exit flag older than 30s is force-cleared and exits run."""
        manager.context.exit_flag.start(clock.now - 31)
        bid(gateway, 90)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.trigger == ExitTrigger.STOP_LOSS
        assert not manager.context.exit_flag.active

    @pytest.mark.asyncio
    async def test_missing_bid_defers(self, manager, gateway, market, clock, position):
        """Without any bid the exit evaluation waits for the next tick."""
        gateway.set_price(UP_TOKEN, OrderSide.SELL, RuntimeError("timeout"))

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.acted is False
        assert "exit_prices" in manager.get_last_errors()


class TestFlipGuard:
    """The underlying approaches the price to beat."""

    @pytest.mark.asyncio
    async def test_cancels_pending_entries(self, manager, gateway, market, clock):
        """Distance below 15 cancels every resting entry."""
        gateway.set_price(UP_TOKEN, OrderSide.BUY, 97)
        gateway.set_price(DOWN_TOKEN, OrderSide.BUY, 3)
        placed = await manager.on_tick(make_snapshot(market, clock.now))

        result = await manager.on_tick(
            make_snapshot(market, clock.now, current_price=100_010, price_to_beat=100_000)
        )

        assert result.exit.trigger == ExitTrigger.FLIP_GUARD_PENDING
        assert result.exit.cancelled_order_ids == [placed.entry.order_id]
        assert gateway.cancelled == [placed.entry.order_id]
        assert manager.context.pending_entries == {}
        assert manager.get_trades()[0].status == TradeStatus.CANCELLED
        assert result.entry is None

    @pytest.mark.asyncio
    async def test_cancel_failure_still_clears_tracking(self, manager, gateway, market, clock):
        """A failed cancel is logged and tracking is cleared anyway."""
        gateway.set_price(UP_TOKEN, OrderSide.BUY, 97)
        gateway.set_price(DOWN_TOKEN, OrderSide.BUY, 3)
        await manager.on_tick(make_snapshot(market, clock.now))
        gateway.set_cancel_result(False)

        await manager.on_tick(
            make_snapshot(market, clock.now, current_price=100_010, price_to_beat=100_000)
        )

        assert manager.context.pending_entries == {}
        assert "cancel" in manager.get_last_errors()

    @pytest.mark.asyncio
    async def test_emergency_close_bypasses_other_checks(
        self, manager, gateway, market, clock, sleep, position
    ):
        """Distance $4 with open positions sells at market even at the profit target."""
        bid(gateway, 99.5)

        result = await manager.on_tick(
            make_snapshot(market, clock.now, current_price=100_004, price_to_beat=100_000)
        )

        assert result.exit.trigger == ExitTrigger.FLIP_GUARD_FILLED
        assert gateway.orders(side=OrderSide.SELL, order_type=OrderType.GTC) == []
        assert len(gateway.orders(side=OrderSide.SELL, order_type=OrderType.FAK)) == 1
        assert sleep.delays == []
        assert manager.get_positions() == []

    @pytest.mark.asyncio
    async def test_wide_distance_no_action(self, manager, gateway, market, clock, position):
        """A distance above both thresholds leaves positions alone."""
        bid(gateway, 97)

        result = await manager.on_tick(
            make_snapshot(market, clock.now, current_price=100_020, price_to_beat=100_000)
        )

        assert result.exit.acted is False


class TestInactive:
    """Exits require active trading."""

    @pytest.mark.asyncio
    async def test_stopped_manager_does_not_exit(self, manager, gateway, market, clock, position):
        """After stop_trading no exit fires."""
        manager.stop_trading()
        bid(gateway, 90)

        result = await manager.on_tick(make_snapshot(market, clock.now))

        assert result.exit.acted is False
        assert gateway.submitted == []
