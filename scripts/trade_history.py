#!/usr/bin/env python
"""Trade history and P&L reporter.

Usage:
    python scripts/trade_history.py --db data/spotbot.db summary
    python scripts/trade_history.py --db data/spotbot.db list --symbol BTC/USDC --limit 20
    python scripts/trade_history.py --db data/spotbot.db trips
    python scripts/trade_history.py --db data/spotbot.db daily
"""
import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotbot.persistence_sqlite import SQLiteStore
from spotbot.pnl import aggregate_pnl, daily_stats, open_holdings, round_trips


def format_ts(ts_ms):
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def summary(store, symbol=None):
    """Show realized P&L summary, per symbol and overall."""
    trades = store.list_trades(symbol)
    if not trades:
        print("No trades recorded")
        return

    trips = round_trips(trades)
    symbols = sorted({t.symbol for t in trades})

    print(f"\n{'Symbol':<12} {'Trades':<8} {'Buys':<6} {'Sells':<6} {'Realized P&L':<14} {'Win Rate':<10}")
    print("-" * 60)
    for sym in symbols:
        stats = store.get_trade_stats(sym)
        print(
            f"{sym:<12} {stats.total_trades:<8} {stats.buy_trades:<6} {stats.sell_trades:<6} "
            f"{stats.total_pnl:<14.4f} {stats.win_rate:.1f}%"
        )

    agg = aggregate_pnl(trips)
    print("\n=== Overall ===")
    print(f"Round trips: {agg['total_trades']}")
    print(f"Realized P&L: {agg['total_realized_pnl']:.4f}")
    print(f"Wins / Losses: {agg['win_count']} / {agg['loss_count']}")
    print(f"Win Rate: {agg['win_rate_percent']:.1f}%")
    print(f"Avg Return: {agg['avg_pnl_percent']:.2f}%")

    held = open_holdings(trades)
    if held:
        print("\nStill held:")
        for sym, qty in sorted(held.items()):
            print(f"  {sym}: {qty}")


def list_trades(store, symbol=None, limit=None):
    trades = store.list_trades(symbol, limit=limit)
    if not trades:
        print("No trades recorded")
        return

    print(f"\n{'Time':<20} {'Symbol':<12} {'Side':<6} {'Price':<14} {'Qty':<14} {'Notional':<12} {'Order ID':<20}")
    print("-" * 100)
    for t in trades:
        print(
            f"{format_ts(t.timestamp):<20} {t.symbol:<12} {t.side.value:<6} "
            f"{t.price:<14.2f} {t.quantity:<14.6f} {t.notional:<12.2f} {t.order_id or '-':<20}"
        )


def list_round_trips(store, symbol=None):
    trips = round_trips(store.list_trades(symbol))
    if not trips:
        print("No completed round trips")
        return

    print(f"\n{'Closed':<20} {'Symbol':<12} {'Avg Buy':<14} {'Sell':<14} {'Qty':<14} {'P&L':<12} {'P&L %':<8}")
    print("-" * 96)
    for trip in trips:
        print(
            f"{format_ts(trip.closed_at):<20} {trip.symbol:<12} {trip.avg_buy_price:<14.2f} "
            f"{trip.sell_price:<14.2f} {trip.quantity:<14.6f} {trip.realized_pnl:<12.4f} {trip.pnl_percent:.2f}%"
        )


def daily(store, symbol=None):
    days = daily_stats(store.list_trades(symbol))
    if not days:
        print("No trades recorded")
        return

    print(f"\n{'Day':<12} {'Trades':<8} {'Cash Flow':<14} {'Realized P&L':<14}")
    print("-" * 50)
    for d in days:
        print(f"{d.day.isoformat():<12} {d.trades:<8} {d.cash_flow:<14.2f} {d.realized_pnl:<14.4f}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Trade history and P&L reporter")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    parser.add_argument("--symbol", help="Restrict to one symbol, e.g. BTC/USDC")

    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("summary")
    lst = sub.add_parser("list")
    lst.add_argument("--limit", type=int, default=None)
    sub.add_parser("trips")
    sub.add_parser("daily")

    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        return 1

    store = SQLiteStore(db_path)
    try:
        if args.cmd == "summary":
            summary(store, args.symbol)
        elif args.cmd == "list":
            list_trades(store, args.symbol, args.limit)
        elif args.cmd == "trips":
            list_round_trips(store, args.symbol)
        elif args.cmd == "daily":
            daily(store, args.symbol)
        else:
            parser.print_help()
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
