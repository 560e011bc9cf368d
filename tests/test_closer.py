"""Tests for the position closer: aggregation, retries, partial fills and splits."""

import pytest

from quarterhour.client.gateway import OrderAck, OrderType
from quarterhour.core.errors import PositionNotFoundError
from quarterhour.domain.market import Direction, OrderSide
from quarterhour.domain.position import TradeOrderType
from quarterhour.lifecycle.closer import PositionCloser
from tests.fixtures.markets import DOWN_TOKEN, UP_TOKEN, make_position, make_snapshot


@pytest.fixture
def closer(manager):
    return PositionCloser(manager.context)


def add(manager, market, token=UP_TOKEN, fills=((96.0, 50.0),)):
    direction = Direction.UP if token == UP_TOKEN else Direction.DOWN
    position = make_position(market_id=market.id, token_id=token, direction=direction, fills=fills)
    manager.context.ledger.add(position)
    return position


class TestAggregation:
    """Positions on one token close with a single order."""

    @pytest.mark.asyncio
    async def test_two_small_positions_one_order(self, manager, closer, gateway, market):
        """Two $2 positions at 65 close with one order of about 6.15 shares."""
        first = add(manager, market, fills=((65.0, 2.0),))
        second = add(manager, market, fills=((65.0, 2.0),))
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 60)

        report = await closer.close_taker([first, second], "stop loss")

        sells = gateway.orders(side=OrderSide.SELL)
        assert len(sells) == 1
        assert sells[0].shares == pytest.approx(6.15)
        assert sorted(report.closed_ids) == sorted([first.id, second.id])
        assert len(manager.get_trades()) == 1

    @pytest.mark.asyncio
    async def test_one_order_per_token(self, manager, closer, gateway, market):
        """UP and DOWN positions close with one order each."""
        up = add(manager, market, UP_TOKEN)
        down = add(manager, market, DOWN_TOKEN, fills=((96.0, 10.0),))
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.set_price(DOWN_TOKEN, OrderSide.SELL, 8)

        report = await closer.close_taker([up, down], "flip guard")

        assert [r.token_id for r in gateway.submitted] == [UP_TOKEN, DOWN_TOKEN]
        assert report.success

    @pytest.mark.asyncio
    async def test_realized_profit(self, manager, closer, gateway, market):
        """Profit is exit proceeds minus the cost of the shares sold."""
        position = add(manager, market, fills=((80.0, 40.0),))
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)

        report = await closer.close_taker([position], "manual")

        assert report.realized_profit == pytest.approx(50 * 0.90 - 40)
        trade = manager.get_trades()[-1]
        assert trade.order_type == TradeOrderType.MARKET
        assert manager.get_status().total_profit == pytest.approx(5.0)


class TestTakerRetries:
    """Failed closes are retried once; balance errors are not."""

    @pytest.mark.asyncio
    async def test_failed_token_retried_after_one_second(self, manager, closer, gateway, market, sleep):
        """When some tokens closed, failed tokens retry after 1s."""
        up = add(manager, market, UP_TOKEN)
        down = add(manager, market, DOWN_TOKEN)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.set_price(DOWN_TOKEN, OrderSide.SELL, 8)
        gateway.queue_ack(DOWN_TOKEN, RuntimeError("connection reset by peer"))

        report = await closer.close_taker([up, down], "stop loss")

        assert sleep.delays == [1.0]
        assert sorted(report.closed_ids) == sorted([up.id, down.id])
        assert report.failed_ids == []
        assert report.errors == {}
        assert len(gateway.orders(side=OrderSide.SELL)) == 3

    @pytest.mark.asyncio
    async def test_emergency_retry_when_nothing_closed(self, manager, closer, gateway, market, sleep):
        """When every token failed, everything retries after 2s."""
        position = add(manager, market)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.queue_ack(UP_TOKEN, RuntimeError("request timed out"))

        report = await closer.close_taker([position], "stop loss")

        assert sleep.delays == [2.0]
        assert report.closed_ids == [position.id]
        assert report.success

    @pytest.mark.asyncio
    async def test_balance_error_not_retried(self, manager, closer, gateway, market, sleep):
        """Insufficient balance is reported distinctly and not retried."""
        up = add(manager, market, UP_TOKEN)
        down = add(manager, market, DOWN_TOKEN)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.set_price(DOWN_TOKEN, OrderSide.SELL, 8)
        gateway.queue_ack(DOWN_TOKEN, RuntimeError("not enough balance / allowance"))

        report = await closer.close_taker([up, down], "stop loss")

        assert sleep.delays == []
        assert report.closed_ids == [up.id]
        assert report.failed_ids == [down.id]
        assert "balance" in report.errors[DOWN_TOKEN]
        assert down.id in manager.context.ledger

    @pytest.mark.asyncio
    async def test_emergency_retry_skips_balance_error(self, manager, closer, gateway, market, sleep):
        """The emergency pass retries the transient failure only."""
        up = add(manager, market, UP_TOKEN)
        down = add(manager, market, DOWN_TOKEN)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, None)
        gateway.set_price(DOWN_TOKEN, OrderSide.SELL, 8)
        gateway.queue_ack(DOWN_TOKEN, RuntimeError("not enough balance / allowance"))

        report = await closer.close_taker([up, down], "stop loss")

        assert sleep.delays == [2.0]
        down_sells = [r for r in gateway.orders(side=OrderSide.SELL) if r.token_id == DOWN_TOKEN]
        assert len(down_sells) == 1
        assert "balance" in report.errors[DOWN_TOKEN]
        assert sorted(report.failed_ids) == sorted([up.id, down.id])
        assert down.id in manager.context.ledger

    @pytest.mark.asyncio
    async def test_no_bid_fails_after_retry(self, manager, closer, gateway, market, sleep):
        """With no bid at all the position stays open and is flagged."""
        position = add(manager, market)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, None)

        report = await closer.close_taker([position], "stop loss")

        assert sleep.delays == [2.0]
        assert report.failed_ids == [position.id]
        assert UP_TOKEN in report.errors
        assert position.id in manager.context.ledger
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_without_retries(self, manager, closer, gateway, market, sleep):
        """with_retries=False makes a single pass."""
        position = add(manager, market)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.queue_ack(UP_TOKEN, RuntimeError("connection refused"))

        report = await closer.close_taker([position], "flip guard", with_retries=False)

        assert sleep.delays == []
        assert report.failed_ids == [position.id]


class TestPartialFills:
    """A partially filled taker sell shrinks the position."""

    @pytest.mark.asyncio
    async def test_partial_fill_sets_shares_remaining(self, manager, closer, gateway, market):
        """20 of 52.08 shares sold leaves 32.08 shares open."""
        position = add(manager, market)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.queue_ack(UP_TOKEN, OrderAck(success=True, order_id="s-1", filled_shares=20))

        report = await closer.close_taker([position], "stop loss", with_retries=False)

        assert report.failed_ids == [position.id]
        assert "partial fill" in report.errors[UP_TOKEN]
        assert position.open_shares == pytest.approx(32.08, abs=0.01)
        assert position.size == 50
        assert len(manager.get_trades()) == 1

    @pytest.mark.asyncio
    async def test_remainder_sold_on_retry(self, manager, closer, gateway, market, sleep):
        """The retry pass sells the remaining shares and closes the position."""
        position = add(manager, market)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.queue_ack(UP_TOKEN, OrderAck(success=True, order_id="s-1", filled_shares=20))

        report = await closer.close_taker([position], "stop loss")

        sells = gateway.orders(side=OrderSide.SELL)
        assert len(sells) == 2
        assert sells[1].shares == pytest.approx(32.08)
        assert report.closed_ids == [position.id]
        assert report.success
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_zero_fill_is_no_liquidity(self, manager, closer, gateway, market):
        """An FAK that matched nothing counts as a failure."""
        position = add(manager, market)
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 90)
        gateway.queue_ack(UP_TOKEN, OrderAck(success=True, order_id="s-1", filled_shares=0))

        report = await closer.close_taker([position], "stop loss", with_retries=False)

        assert report.failed_ids == [position.id]
        assert manager.get_status().consecutive_failures == 1


class TestManualClose:
    """Host-initiated closes through the lifecycle manager."""

    async def activate(self, manager, gateway, market, clock):
        gateway.set_price(UP_TOKEN, OrderSide.SELL, 95)
        gateway.set_price(DOWN_TOKEN, OrderSide.SELL, 4)
        await manager.on_tick(make_snapshot(market, clock.now))

    @pytest.mark.asyncio
    async def test_large_position_split_in_three(self, manager, gateway, market, clock, sleep):
        """A $60 position sells in three parts 0.5s apart."""
        position = add(manager, market, fills=((96.0, 60.0),))
        await self.activate(manager, gateway, market, clock)

        report = await manager.close_position_manually(position.id)

        sells = gateway.orders(side=OrderSide.SELL, order_type=OrderType.FAK)
        assert [s.shares for s in sells] == [20.83, 20.83, 20.84]
        assert sleep.delays == [0.5, 0.5]
        assert report.closed_ids == [position.id]
        assert manager.get_positions() == []

    @pytest.mark.asyncio
    async def test_small_position_single_order(self, manager, gateway, market, clock, sleep):
        """A $50 position is not split."""
        position = add(manager, market)
        await self.activate(manager, gateway, market, clock)

        await manager.close_position_manually(position.id)

        assert len(gateway.orders(side=OrderSide.SELL)) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_stop_loss_close_never_splits(self, manager, gateway, market, clock):
        """A manual stop loss sells in one order regardless of size."""
        position = add(manager, market, fills=((96.0, 60.0),))
        await self.activate(manager, gateway, market, clock)

        await manager.close_position_manually(position.id, "stop loss", stop_loss=True)

        assert len(gateway.orders(side=OrderSide.SELL)) == 1

    @pytest.mark.asyncio
    async def test_unknown_position(self, manager, gateway, market, clock):
        """Closing an unknown id raises."""
        await self.activate(manager, gateway, market, clock)

        with pytest.raises(PositionNotFoundError):
            await manager.close_position_manually("pos-missing")

    @pytest.mark.asyncio
    async def test_position_outside_active_market(self, manager, gateway, market, clock):
        """Positions from an earlier market cannot be closed manually."""
        position = make_position(market_id="btc-updown-15m-999100")
        manager.context.ledger.add(position)
        await self.activate(manager, gateway, market, clock)

        with pytest.raises(PositionNotFoundError):
            await manager.close_position_manually(position.id)

    @pytest.mark.asyncio
    async def test_close_all(self, manager, gateway, market, clock):
        """close_all sells every active position, one order per token."""
        await self.activate(manager, gateway, market, clock)
        add(manager, market, UP_TOKEN)
        add(manager, market, UP_TOKEN, fills=((97.0, 20.0),))
        add(manager, market, DOWN_TOKEN, fills=((96.0, 10.0),))

        report = await manager.close_all_positions_manually()

        assert len(gateway.orders(side=OrderSide.SELL)) == 2
        assert len(report.closed_ids) == 3
        assert manager.get_positions() == []
        assert not manager.context.exit_flag.active
