from decimal import Decimal

import pytest

from conftest import open_position
from spotbot.errors import ErrorKind, ExchangeUnavailable, OrderRejected, Outcome, PersistenceWriteFailure
from spotbot.exchange import OrderState
from spotbot.execution import OrderExecutor
from spotbot.position import BotState, OrderType
from spotbot.trade import TradeSide


def make_executor(exchange, store, config, clock, **overrides):
    if overrides:
        config = config.model_copy(update=overrides)
    return OrderExecutor(exchange, store, config, poll_interval=1.0, clock=clock)


class TestBuy:
    @pytest.mark.asyncio
    async def test_buy_fills_and_commits(self, exchange, store, trading_config, clock):
        exchange.auto_fill = True
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FILLED
        # 50 USDC at ask 100 -> 0.5, limit 0.05% above the ask
        assert result.quantity == Decimal("0.5")
        assert result.price == Decimal("100.05")
        pos = store.get_position("BTC/USDC")
        assert pos.is_active()
        assert pos.order_type is OrderType.LIMIT
        assert pos.highest_price == pos.buy_price
        assert store.get_status("BTC/USDC").state is BotState.IN_POSITION
        assert [t.side for t in store.list_trades()] == [TradeSide.BUY]

    @pytest.mark.asyncio
    async def test_buy_fill_observed_while_polling(self, exchange, store, trading_config, clock):
        executor = make_executor(exchange, store, trading_config, clock)
        clock.on_sleep.append(lambda c: exchange.fill_order("1", price=Decimal("100.02")) if c.now == 2 else None)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FILLED
        assert result.price == Decimal("100.02")
        assert store.get_position("BTC/USDC").buy_price == Decimal("100.02")

    @pytest.mark.asyncio
    async def test_buy_timeout_cancels_and_stays_idle(self, exchange, store, trading_config, clock):
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.TIMED_OUT
        assert exchange.orders["1"].state is OrderState.CANCELED
        assert ("cancel_order", ("1", "BTC/USDC")) in exchange.calls
        assert clock.now == pytest.approx(5.0)
        assert not store.get_position("BTC/USDC").is_active()
        assert store.list_trades() == []

    @pytest.mark.asyncio
    async def test_unknown_order_on_first_poll_keeps_polling(self, exchange, store, trading_config, clock):
        exchange.fail_next("fetch_order", OrderRejected("Order does not exist (-2013)", symbol="BTC/USDC"))
        executor = make_executor(exchange, store, trading_config, clock)
        clock.on_sleep.append(lambda c: exchange.fill_order("1") if c.now == 2 else None)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FILLED
        assert store.get_position("BTC/USDC").is_active()
        assert [t.side for t in store.list_trades()] == [TradeSide.BUY]

    @pytest.mark.asyncio
    async def test_unknown_order_then_timeout_cancels_live_order(self, exchange, store, trading_config, clock):
        exchange.fail_next("fetch_order", OrderRejected("Order does not exist (-2013)", symbol="BTC/USDC"))
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.TIMED_OUT
        assert exchange.orders["1"].state is OrderState.CANCELED
        assert ("cancel_order", ("1", "BTC/USDC")) in exchange.calls
        assert not store.get_position("BTC/USDC").is_active()

    @pytest.mark.asyncio
    async def test_partial_fill_at_timeout_opens_filled_quantity(self, exchange, store, trading_config, clock):
        executor = make_executor(exchange, store, trading_config, clock)
        clock.on_sleep.append(
            lambda c: exchange.fill_order("1", quantity=Decimal("0.2")) if c.now == 1 else None
        )

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FILLED
        assert result.quantity == Decimal("0.2")
        assert exchange.orders["1"].state is OrderState.CANCELED
        assert store.get_position("BTC/USDC").quantity == Decimal("0.2")

    @pytest.mark.asyncio
    async def test_insufficient_funds_skips_without_order(self, exchange, store, trading_config, clock):
        exchange.set_balance("USDC", Decimal("10"))
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.SKIPPED
        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert not exchange.orders

    @pytest.mark.asyncio
    async def test_balance_check_covers_limit_price_margin(self, exchange, store, trading_config, clock):
        # 0.5 at 100.05 needs 50.025, just above the 50 notional
        exchange.set_balance("USDC", Decimal("50"))
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.SKIPPED
        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert not exchange.orders

    @pytest.mark.asyncio
    async def test_below_min_notional_is_rejected_locally(self, exchange, store, trading_config, clock):
        executor = make_executor(exchange, store, trading_config, clock, notional_amount_per_trade=Decimal("4"))

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FAILED
        assert result.error_kind is ErrorKind.ORDER_REJECTED
        assert not exchange.orders

    @pytest.mark.asyncio
    async def test_exchange_down_is_reported_retryable(self, exchange, store, trading_config, clock):
        exchange.fail_next("fetch_ticker", ExchangeUnavailable("503", symbol="BTC/USDC"))
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FAILED
        assert result.retryable

    @pytest.mark.asyncio
    async def test_commit_failure_is_raised(self, exchange, store, trading_config, clock):
        exchange.auto_fill = True
        store.conn.execute("DROP TABLE trade_history")
        store.conn.commit()
        executor = make_executor(exchange, store, trading_config, clock)

        with pytest.raises(PersistenceWriteFailure):
            await executor.buy("BTC/USDC")


class TestBracket:
    @pytest.mark.asyncio
    async def test_buy_with_bracket(self, exchange, store, trading_config, clock):
        exchange.auto_fill = True
        executor = make_executor(exchange, store, trading_config, clock, use_oco_orders=True)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FILLED
        pos = store.get_position("BTC/USDC")
        assert pos.is_oco()
        bracket = exchange.brackets[pos.oco_order_list_id]
        # buy 100.05: tp +3%, sl -2%, stop-limit 0.5% under the stop
        assert bracket.take_profit.price == Decimal("103.05")
        assert bracket.stop_price == Decimal("98.05")
        assert bracket.stop_loss.price == Decimal("97.55")
        assert pos.take_profit_price == Decimal("103.05")
        assert pos.stop_loss_price == Decimal("98.05")

    @pytest.mark.asyncio
    async def test_bracket_failure_keeps_limit_position(self, exchange, store, trading_config, clock):
        exchange.auto_fill = True
        exchange.fail_next("create_bracket_sell_order", OrderRejected("PERCENT_PRICE filter"))
        executor = make_executor(exchange, store, trading_config, clock, use_oco_orders=True)

        result = await executor.buy("BTC/USDC")

        assert result.outcome is Outcome.FILLED
        pos = store.get_position("BTC/USDC")
        assert pos.is_active()
        assert pos.order_type is OrderType.LIMIT


class TestSell:
    @pytest.mark.asyncio
    async def test_sell_closes_position(self, exchange, store, trading_config, clock):
        exchange.auto_fill = True
        exchange.set_ticker("BTC/USDC", Decimal("103"))
        exchange.set_balance("BTC", Decimal("0.5"))
        pos = open_position(store, "BTC/USDC", "100", "0.5")
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.sell("BTC/USDC", pos, "signal_exit")

        assert result.outcome is Outcome.FILLED
        # 0.05% under the bid, rounded down to the tick
        assert result.price == Decimal("102.94")
        assert store.get_status("BTC/USDC").state is BotState.IDLE
        assert [t.side for t in store.list_trades()] == [TradeSide.BUY, TradeSide.SELL]

    @pytest.mark.asyncio
    async def test_sell_timeout_keeps_position(self, exchange, store, trading_config, clock):
        exchange.set_balance("BTC", Decimal("0.5"))
        pos = open_position(store, "BTC/USDC", "100", "0.5")
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.sell("BTC/USDC", pos)

        assert result.outcome is Outcome.TIMED_OUT
        assert store.get_position("BTC/USDC").is_active()
        assert exchange.open_orders() == []

    @pytest.mark.asyncio
    async def test_sell_quantity_capped_by_free_balance(self, exchange, store, trading_config, clock):
        exchange.auto_fill = True
        exchange.set_balance("BTC", Decimal("0.4995"))
        pos = open_position(store, "BTC/USDC", "100", "0.5")
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.sell("BTC/USDC", pos)

        assert result.quantity == Decimal("0.4995")
        assert store.get_status("BTC/USDC").state is BotState.IDLE
        assert store.list_trades()[-1].quantity == Decimal("0.4995")


class TestEmergencyExit:
    @pytest.mark.asyncio
    async def test_places_aggressive_sell_and_records_order(self, exchange, store, trading_config, clock):
        exchange.set_ticker("BTC/USDC", Decimal("94"))
        exchange.set_balance("BTC", Decimal("0.5"))
        pos = open_position(store, "BTC/USDC", "100", "0.5")
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.emergency_exit("BTC/USDC", pos)

        assert result.outcome is Outcome.PLACED
        # 1% under the bid
        assert result.price == Decimal("93.06")
        assert store.get_position("BTC/USDC").exit_order_id == result.order_id
        # no fill polling
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_cancels_bracket_first(self, exchange, store, trading_config, clock):
        exchange.set_ticker("BTC/USDC", Decimal("94"))
        exchange.set_balance("BTC", Decimal("0.5"))
        bracket = await exchange.create_bracket_sell_order(
            "BTC/USDC", Decimal("0.5"), Decimal("103"), Decimal("98"), Decimal("97.5")
        )
        pos = open_position(store, "BTC/USDC", "100", "0.5", list_id=bracket.list_id, tp="103", sl="98")
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.emergency_exit("BTC/USDC", pos)

        assert result.outcome is Outcome.PLACED
        assert all(leg.state is OrderState.CANCELED for leg in exchange.brackets[bracket.list_id].legs)
        stored = store.get_position("BTC/USDC")
        assert stored.order_type is OrderType.LIMIT
        assert stored.exit_pending

    @pytest.mark.asyncio
    async def test_bracket_already_filled_closes_without_selling(self, exchange, store, trading_config, clock):
        exchange.set_balance("BTC", Decimal("0.5"))
        bracket = await exchange.create_bracket_sell_order(
            "BTC/USDC", Decimal("0.5"), Decimal("103"), Decimal("98"), Decimal("97.5")
        )
        exchange.resolve_bracket(bracket.list_id, leg="stop_loss", price=Decimal("97.6"))
        pos = open_position(store, "BTC/USDC", "100", "0.5", list_id=bracket.list_id, tp="103", sl="98")
        executor = make_executor(exchange, store, trading_config, clock)

        result = await executor.emergency_exit("BTC/USDC", pos)

        assert result.outcome is Outcome.FILLED
        assert result.price == Decimal("97.6")
        assert store.get_status("BTC/USDC").state is BotState.IDLE
        assert not any(call[0] == "create_limit_order" for call in exchange.calls)
