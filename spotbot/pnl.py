"""P&L reconstruction from the trade ledger."""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .trade import Trade, TradeSide

DUST = Decimal("0.00000001")


@dataclass
class RoundTrip:
    """A sell matched against the weighted-average cost of earlier buys."""
    symbol: str
    avg_buy_price: Decimal
    sell_price: Decimal
    quantity: Decimal
    realized_pnl: Decimal
    pnl_percent: Decimal
    closed_at: int  # epoch ms of the sell


@dataclass
class DailyStats:
    day: date
    trades: int = 0
    cash_flow: Decimal = Decimal('0')  # sells minus buys, quote currency
    realized_pnl: Decimal = Decimal('0')


@dataclass
class _Book:
    quantity: Decimal = Decimal('0')
    cost: Decimal = Decimal('0')


def round_trips(trades: Iterable[Trade]) -> List[RoundTrip]:
    """Match sells against buys per symbol using weighted-average cost.

    Trades must be ordered oldest first. Sells with no prior holdings
    (e.g. a ledger that starts mid-position) are ignored.
    """
    books: Dict[str, _Book] = {}
    trips: List[RoundTrip] = []
    for t in trades:
        book = books.setdefault(t.symbol, _Book())
        if t.side is TradeSide.BUY:
            book.quantity += t.quantity
            book.cost += t.price * t.quantity
            continue
        if book.quantity <= 0:
            continue
        avg = book.cost / book.quantity
        sold = min(t.quantity, book.quantity)
        cost_of_sold = avg * sold
        pnl = t.price * sold - cost_of_sold
        trips.append(RoundTrip(
            symbol=t.symbol,
            avg_buy_price=avg,
            sell_price=t.price,
            quantity=sold,
            realized_pnl=pnl,
            pnl_percent=(t.price - avg) / avg * Decimal('100') if avg else Decimal('0'),
            closed_at=t.timestamp,
        ))
        book.quantity -= sold
        book.cost -= cost_of_sold
        if book.quantity < DUST:
            book.quantity = Decimal('0')
            book.cost = Decimal('0')
    return trips


def open_holdings(trades: Iterable[Trade]) -> Dict[str, Decimal]:
    """Quantity still held per symbol after replaying the ledger."""
    held: Dict[str, Decimal] = {}
    for t in trades:
        delta = t.quantity if t.side is TradeSide.BUY else -t.quantity
        held[t.symbol] = max(Decimal('0'), held.get(t.symbol, Decimal('0')) + delta)
    return {s: q for s, q in held.items() if q >= DUST}


def _day(ts_ms: int) -> date:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).date()


def daily_stats(trades: List[Trade]) -> List[DailyStats]:
    """Per-day trade count, cash flow and realized P&L, newest day first."""
    days: Dict[date, DailyStats] = {}
    for t in trades:
        d = days.setdefault(_day(t.timestamp), DailyStats(day=_day(t.timestamp)))
        d.trades += 1
        d.cash_flow += t.notional if t.side is TradeSide.SELL else -t.notional
    for trip in round_trips(trades):
        d = days.setdefault(_day(trip.closed_at), DailyStats(day=_day(trip.closed_at)))
        d.realized_pnl += trip.realized_pnl
    return sorted(days.values(), key=lambda s: s.day, reverse=True)


def aggregate_pnl(trips: List[RoundTrip], unrealized: Optional[Decimal] = None) -> dict:
    """Aggregate realized P&L across round trips.

    Args:
        trips: Completed round trips
        unrealized: Optional mark-to-market P&L of open positions

    Returns:
        Dict with totals and statistics
    """
    unrealized = unrealized or Decimal('0')
    if not trips:
        return {
            "total_trades": 0,
            "total_realized_pnl": Decimal('0'),
            "total_unrealized_pnl": unrealized,
            "total_pnl": unrealized,
            "win_count": 0,
            "loss_count": 0,
            "win_rate_percent": Decimal('0'),
            "avg_pnl_percent": Decimal('0'),
        }

    total_realized = sum((t.realized_pnl for t in trips), Decimal('0'))
    wins = len([t for t in trips if t.realized_pnl > 0])
    losses = len([t for t in trips if t.realized_pnl < 0])

    return {
        "total_trades": len(trips),
        "total_realized_pnl": total_realized,
        "total_unrealized_pnl": unrealized,
        "total_pnl": total_realized + unrealized,
        "win_count": wins,
        "loss_count": losses,
        "win_rate_percent": Decimal(wins) / Decimal(len(trips)) * Decimal('100'),
        "avg_pnl_percent": sum((t.pnl_percent for t in trips), Decimal('0')) / Decimal(len(trips)),
    }
