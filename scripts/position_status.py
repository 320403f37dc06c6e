#!/usr/bin/env python
"""Position status CLI: show per-symbol bot state and open positions.

Usage:
    python scripts/position_status.py --db data/spotbot.db list
    python scripts/position_status.py --db data/spotbot.db show BTC/USDC
"""
import argparse
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotbot.persistence_sqlite import SQLiteStore


def format_decimal(d, decimals=2):
    """Format decimal for display."""
    if d is None:
        return "-"
    return f"{d:.{decimals}f}"


def format_ts(ts_ms):
    if not ts_ms:
        return "N/A"
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def list_positions(store):
    """List every known symbol with its state and position summary."""
    statuses = store.list_statuses()
    symbols = sorted(set(statuses) | set(store.active_symbols()))
    if not symbols:
        print("No symbols recorded yet")
        return

    print(f"\n{'Symbol':<12} {'State':<12} {'Type':<6} {'Qty':<14} {'Buy Price':<14} {'Highest':<14} {'Exit Order':<12}")
    print("-" * 90)
    for symbol in symbols:
        status = statuses.get(symbol) or store.get_status(symbol)
        pos = store.get_position(symbol)
        if not pos.is_active():
            print(f"{symbol:<12} {status.state.value:<12} {'-':<6} {'-':<14} {'-':<14} {'-':<14} {'-':<12}")
            continue
        print(
            f"{symbol:<12} "
            f"{status.state.value:<12} "
            f"{pos.order_type.value:<6} "
            f"{format_decimal(pos.quantity, 6):<14} "
            f"{format_decimal(pos.buy_price, 2):<14} "
            f"{format_decimal(pos.highest_price, 2):<14} "
            f"{pos.exit_order_id or '-':<12}"
        )
    print(f"\nActive positions: {store.count_active_positions()}")


def show_position(store, symbol):
    """Show detailed state for one symbol."""
    status = store.get_status(symbol)
    pos = store.get_position(symbol)

    print(f"\n=== {symbol} ===")
    print(f"State: {status.state.value} (updated {format_ts(status.updated_at)})")
    if not pos.is_active():
        print("No open position")
    else:
        print(f"Order Type: {pos.order_type.value}")
        print(f"Buy Price: {format_decimal(pos.buy_price, 2)}")
        print(f"Quantity: {format_decimal(pos.quantity, 6)}")
        print(f"Cost: {format_decimal(pos.cost, 2)}")
        print(f"Highest Price: {format_decimal(pos.highest_price, 2)}")
        print(f"Buy Order ID: {pos.buy_order_id or '(none)'}")
        print(f"Opened: {format_ts(pos.created_at)}")
        if pos.is_oco():
            print(f"Bracket List ID: {pos.oco_order_list_id}")
            print(f"Take Profit: {format_decimal(pos.take_profit_price, 2)}")
            print(f"Stop Loss: {format_decimal(pos.stop_loss_price, 2)}")
            print(f"Potential Profit: {format_decimal(pos.potential_take_profit() or Decimal('0'), 2)}")
        if pos.exit_pending:
            print(f"Pending Exit Order: {pos.exit_order_id}")

    trades = store.list_trades(symbol, limit=5)
    if trades:
        print(f"\nRecent Trades ({len(trades)}):")
        print(f"{'Time':<20} {'Side':<6} {'Price':<14} {'Qty':<14} {'Order ID':<20}")
        print("-" * 76)
        for t in trades:
            print(
                f"{format_ts(t.timestamp):<20} {t.side.value:<6} "
                f"{format_decimal(t.price, 2):<14} {format_decimal(t.quantity, 6):<14} {t.order_id or '-':<20}"
            )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Position status CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite database")

    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("list")
    show = sub.add_parser("show")
    show.add_argument("symbol")

    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        return 1

    store = SQLiteStore(db_path)
    try:
        if args.cmd == "list":
            list_positions(store)
        elif args.cmd == "show":
            show_position(store, args.symbol)
        else:
            parser.print_help()
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
