from decimal import Decimal
from pathlib import Path

import pytest

from spotbot.config import BotConfig, TradingConfig
from spotbot.exchange import InMemoryExchange
from spotbot.persistence_sqlite import SQLiteStore
from spotbot.position import Position
from spotbot.trade import Trade


class FakeClock:
    """Virtual time for fill polling: ``sleep`` advances ``monotonic`` instantly.

    Callables in ``on_sleep`` run after each sleep with the clock as
    argument, so a test can fill an order "while" the executor waits.
    """

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self.on_sleep = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        for hook in list(self.on_sleep):
            hook(self)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange():
    ex = InMemoryExchange()
    for symbol, price in (("BTC/USDC", "100"), ("ETH/USDC", "50"), ("SOL/USDC", "20")):
        ex.add_market(symbol)
        ex.set_ticker(symbol, Decimal(price))
    ex.set_balance("USDC", Decimal("1000"))
    return ex


@pytest.fixture
def store(tmp_path: Path):
    s = SQLiteStore(tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def trading_config():
    return TradingConfig(
        symbols=["BTC/USDC", "ETH/USDC", "SOL/USDC"],
        notional_amount_per_trade=Decimal("50"),
        order_fill_timeout_ms=5000,
        max_concurrent_positions=2,
    )


@pytest.fixture
def bot_config(tmp_path: Path, trading_config):
    return BotConfig.from_dict({
        "trading": trading_config.model_dump(),
        "persistence": {"db_path": str(tmp_path / "bot.db"), "log_file": str(tmp_path / "bot.log"),
                        "trade_log_file": str(tmp_path / "trades.log")},
    })


def open_position(store: SQLiteStore, symbol: str, buy_price="100", quantity="0.5", order_id="b1", **bracket) -> Position:
    """Commit an entry directly, bypassing the exchange."""
    pos = Position.opened(symbol, Decimal(buy_price), Decimal(quantity), order_id)
    if bracket:
        pos = pos.with_bracket(bracket["list_id"], Decimal(bracket["tp"]), Decimal(bracket["sl"]))
    store.commit_entry(symbol, pos, Trade.buy(symbol, pos.buy_price, pos.quantity, order_id))
    return store.get_position(symbol)
