from decimal import Decimal
from pathlib import Path

import pytest

from conftest import open_position
from spotbot.errors import PersistenceWriteFailure, PositionConflict
from spotbot.persistence_sqlite import SQLiteStore
from spotbot.position import BotState, OrderType, Position
from spotbot.trade import Trade, TradeSide


def test_fresh_store_is_idle(store):
    assert store.get_status("BTC/USDC").state is BotState.IDLE
    assert not store.get_position("BTC/USDC").is_active()
    assert store.count_active_positions() == 0
    assert store.list_trades() == []


def test_entry_and_exit_round_trip(store):
    pos = open_position(store, "BTC/USDC", "100", "0.5", "b1")
    assert pos.buy_price == Decimal("100")
    assert pos.highest_price == Decimal("100")
    assert store.get_status("BTC/USDC").state is BotState.IN_POSITION
    assert store.active_symbols() == ["BTC/USDC"]

    store.commit_exit("BTC/USDC", Trade.sell("BTC/USDC", Decimal("103"), Decimal("0.5"), "s1"))
    assert store.get_status("BTC/USDC").state is BotState.IDLE
    assert not store.get_position("BTC/USDC").is_active()

    trades = store.list_trades("BTC/USDC")
    assert [t.side for t in trades] == [TradeSide.BUY, TradeSide.SELL]
    assert trades[1].price == Decimal("103")


def test_committed_position_reads_back_unchanged(store):
    pos = Position.opened("BTC/USDC", Decimal("100"), Decimal("0.5"), "b1", timestamp=1_700_000_000_000)
    store.commit_entry("BTC/USDC", pos, Trade.buy("BTC/USDC", Decimal("100"), Decimal("0.5"), "b1"))

    assert store.get_position("BTC/USDC") == pos
    assert store.get_position("BTC/USDC").updated_at == 1_700_000_000_000


def test_state_survives_reopen(tmp_path: Path):
    db = tmp_path / "persist.db"
    first = SQLiteStore(db)
    open_position(first, "ETH/USDC", "50", "1", "b7", list_id="L3", tp="51.5", sl="49")
    first.close()

    second = SQLiteStore(db)
    pos = second.get_position("ETH/USDC")
    assert pos.is_oco()
    assert pos.oco_order_list_id == "L3"
    assert pos.take_profit_price == Decimal("51.5")
    assert second.get_status("ETH/USDC").in_position
    second.close()


def test_symbols_are_independent(store):
    open_position(store, "BTC/USDC")
    open_position(store, "ETH/USDC", "50", "1", "b2")
    store.commit_exit("BTC/USDC", Trade.sell("BTC/USDC", Decimal("101"), Decimal("0.5"), "s1"))
    assert store.active_symbols() == ["ETH/USDC"]
    assert store.count_active_positions(["BTC/USDC", "SOL/USDC"]) == 0
    assert store.count_active_positions(["ETH/USDC"]) == 1
    statuses = store.list_statuses()
    assert statuses["BTC/USDC"].state is BotState.IDLE
    assert statuses["ETH/USDC"].state is BotState.IN_POSITION


class TestTransitionGuards:
    def test_double_entry_conflicts(self, store):
        open_position(store, "BTC/USDC")
        pos = Position.opened("BTC/USDC", Decimal("90"), Decimal("1"), "b2")
        with pytest.raises(PositionConflict):
            store.commit_entry("BTC/USDC", pos, Trade.buy("BTC/USDC", pos.buy_price, pos.quantity, "b2"))
        # first position untouched, no extra ledger row
        assert store.get_position("BTC/USDC").buy_price == Decimal("100")
        assert len(store.list_trades()) == 1

    def test_exit_without_position_conflicts(self, store):
        with pytest.raises(PositionConflict):
            store.commit_exit("BTC/USDC", Trade.sell("BTC/USDC", Decimal("1"), Decimal("1"), "s"))
        assert store.list_trades() == []

    def test_conflict_is_a_persistence_failure(self):
        assert issubclass(PositionConflict, PersistenceWriteFailure)

    def test_wrong_trade_side_is_a_programming_error(self, store):
        pos = Position.opened("BTC/USDC", Decimal("100"), Decimal("1"), "b")
        with pytest.raises(ValueError):
            store.commit_entry("BTC/USDC", pos, Trade.sell("BTC/USDC", Decimal("100"), Decimal("1"), "b"))
        with pytest.raises(ValueError):
            store.commit_entry("BTC/USDC", Position(), Trade.buy("BTC/USDC", Decimal("100"), Decimal("1"), "b"))


def test_entry_is_atomic_when_ledger_write_fails(store):
    store.conn.execute("DROP TABLE trade_history")
    store.conn.commit()
    pos = Position.opened("BTC/USDC", Decimal("100"), Decimal("0.5"), "b1")
    with pytest.raises(PersistenceWriteFailure):
        store.commit_entry("BTC/USDC", pos, Trade.buy("BTC/USDC", pos.buy_price, pos.quantity, "b1"))
    assert not store.get_position("BTC/USDC").is_active()
    assert store.get_status("BTC/USDC").state is BotState.IDLE


def test_highest_price_only_moves_up(store):
    open_position(store, "BTC/USDC")
    assert store.update_highest_price("BTC/USDC", Decimal("105"))
    assert not store.update_highest_price("BTC/USDC", Decimal("103"))
    assert store.get_position("BTC/USDC").highest_price == Decimal("105")
    assert not store.update_highest_price("ETH/USDC", Decimal("1"))


def test_reduce_position_partial_then_full(store):
    open_position(store, "BTC/USDC", "100", "1")
    remaining = store.reduce_position("BTC/USDC", Trade.sell("BTC/USDC", Decimal("102"), Decimal("0.4"), "s1"))
    assert remaining == Decimal("0.6")
    assert store.get_position("BTC/USDC").quantity == Decimal("0.6")
    assert store.get_status("BTC/USDC").in_position

    remaining = store.reduce_position("BTC/USDC", Trade.sell("BTC/USDC", Decimal("102"), Decimal("0.6"), "s2"))
    assert remaining == Decimal("0")
    assert store.get_status("BTC/USDC").state is BotState.IDLE
    assert len(store.list_trades("BTC/USDC")) == 3


def test_exit_order_and_bracket_detach(store):
    open_position(store, "BTC/USDC", list_id="L5", tp="103", sl="98")
    store.set_exit_order("BTC/USDC", "77", detach_bracket=True)
    pos = store.get_position("BTC/USDC")
    assert pos.exit_order_id == "77"
    assert pos.order_type is OrderType.LIMIT
    assert pos.oco_order_list_id is None

    store.set_exit_order("BTC/USDC", None)
    assert not store.get_position("BTC/USDC").exit_pending

    with pytest.raises(PositionConflict):
        store.detach_bracket("ETH/USDC")


class TestRepairStatus:
    def test_status_without_position_is_reset(self, store):
        store.conn.execute("INSERT INTO bot_status(symbol, status, updated_at) VALUES('BTC/USDC', 'IN_POSITION', 0)")
        store.conn.commit()
        assert store.repair_status("BTC/USDC") is BotState.IDLE
        assert store.get_status("BTC/USDC").state is BotState.IDLE

    def test_stale_idle_status_is_corrected(self, store):
        open_position(store, "BTC/USDC")
        store.conn.execute("UPDATE bot_status SET status = 'IDLE' WHERE symbol = 'BTC/USDC'")
        store.conn.commit()
        assert store.repair_status("BTC/USDC") is BotState.IN_POSITION
        assert store.get_status("BTC/USDC").in_position

    def test_consistent_state_needs_nothing(self, store):
        assert store.repair_status("BTC/USDC") is None
        open_position(store, "BTC/USDC")
        assert store.repair_status("BTC/USDC") is None


def test_trade_stats(store):
    open_position(store, "BTC/USDC", "100", "1", "b1")
    store.commit_exit("BTC/USDC", Trade.sell("BTC/USDC", Decimal("110"), Decimal("1"), "s1"))
    open_position(store, "BTC/USDC", "100", "1", "b2")
    store.commit_exit("BTC/USDC", Trade.sell("BTC/USDC", Decimal("95"), Decimal("1"), "s2"))
    open_position(store, "ETH/USDC", "50", "1", "b3")

    stats = store.get_trade_stats("BTC/USDC")
    assert stats.total_trades == 4
    assert stats.buy_trades == 2
    assert stats.sell_trades == 2
    assert stats.total_pnl == Decimal("5")
    assert stats.winning_trades == 1
    assert stats.losing_trades == 1
    assert stats.win_rate == Decimal("50")

    overall = store.get_trade_stats()
    assert overall.total_trades == 5
    assert overall.symbol is None


def test_list_trades_limit_keeps_latest(store):
    for i in range(3):
        open_position(store, "BTC/USDC", "100", "1", f"b{i}")
        store.commit_exit("BTC/USDC", Trade.sell("BTC/USDC", Decimal("101"), Decimal("1"), f"s{i}"))
    latest = store.list_trades(limit=2)
    assert [t.order_id for t in latest] == ["b2", "s2"]
