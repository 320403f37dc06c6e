from datetime import date
from decimal import Decimal

from spotbot.pnl import aggregate_pnl, daily_stats, open_holdings, round_trips
from spotbot.trade import Trade

DAY1 = 1700000000000  # 2023-11-14 UTC
DAY2 = DAY1 + 86400000


def ledger():
    return [
        Trade.buy("BTC/USDC", Decimal("100"), Decimal("1"), "b1", DAY1),
        Trade.buy("BTC/USDC", Decimal("110"), Decimal("1"), "b2", DAY1 + 1000),
        Trade.sell("BTC/USDC", Decimal("120"), Decimal("2"), "s1", DAY2),
        Trade.buy("ETH/USDC", Decimal("50"), Decimal("2"), "b3", DAY2 + 1000),
        Trade.sell("ETH/USDC", Decimal("45"), Decimal("1"), "s2", DAY2 + 2000),
    ]


def test_round_trips_use_weighted_average_cost():
    trips = round_trips(ledger())
    assert len(trips) == 2
    btc, eth = trips
    assert btc.avg_buy_price == Decimal("105")
    assert btc.quantity == Decimal("2")
    assert btc.realized_pnl == Decimal("30")
    assert eth.realized_pnl == Decimal("-5")
    assert eth.pnl_percent == Decimal("-10")


def test_sell_without_prior_buy_is_ignored():
    trips = round_trips([Trade.sell("BTC/USDC", Decimal("100"), Decimal("1"), "s0", DAY1)])
    assert trips == []


def test_open_holdings():
    assert open_holdings(ledger()) == {"ETH/USDC": Decimal("1")}


def test_daily_stats_newest_first():
    days = daily_stats(ledger())
    assert [d.day for d in days] == [date(2023, 11, 15), date(2023, 11, 14)]
    latest, first = days
    assert first.trades == 2
    assert first.cash_flow == Decimal("-210")
    assert first.realized_pnl == Decimal("0")
    assert latest.trades == 3
    assert latest.cash_flow == Decimal("240") - Decimal("100") + Decimal("45")
    assert latest.realized_pnl == Decimal("25")


def test_aggregate_pnl():
    stats = aggregate_pnl(round_trips(ledger()), unrealized=Decimal("2"))
    assert stats["total_trades"] == 2
    assert stats["total_realized_pnl"] == Decimal("25")
    assert stats["total_pnl"] == Decimal("27")
    assert stats["win_count"] == 1
    assert stats["loss_count"] == 1
    assert stats["win_rate_percent"] == Decimal("50")


def test_aggregate_pnl_empty():
    stats = aggregate_pnl([])
    assert stats["total_trades"] == 0
    assert stats["total_pnl"] == Decimal("0")
