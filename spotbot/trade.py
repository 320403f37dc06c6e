"""Append-only trade ledger entries and per-symbol statistics."""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .position import now_ms


class TradeSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class Trade:
    """One filled order, written once and never updated."""

    symbol: str
    side: TradeSide
    price: Decimal
    quantity: Decimal
    order_id: Optional[str]
    timestamp: int = field(default_factory=now_ms)
    id: Optional[int] = None  # ledger row id, set when read back

    @classmethod
    def buy(cls, symbol: str, price: Decimal, quantity: Decimal, order_id: Optional[str], timestamp: Optional[int] = None) -> "Trade":
        return cls(symbol, TradeSide.BUY, price, quantity, order_id, timestamp if timestamp is not None else now_ms())

    @classmethod
    def sell(cls, symbol: str, price: Decimal, quantity: Decimal, order_id: Optional[str], timestamp: Optional[int] = None) -> "Trade":
        return cls(symbol, TradeSide.SELL, price, quantity, order_id, timestamp if timestamp is not None else now_ms())

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "order_id": self.order_id,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Trade":
        return Trade(
            symbol=d["symbol"],
            side=TradeSide(d["side"]),
            price=Decimal(str(d["price"])),
            quantity=Decimal(str(d["quantity"])),
            order_id=d.get("order_id"),
            timestamp=int(d["timestamp"]),
            id=d.get("id"),
        )


@dataclass(frozen=True)
class TradeStats:
    """Ledger summary for one symbol (or all symbols when ``symbol`` is None).

    ``total_pnl`` is realized profit in quote currency: positive when
    sells brought back more than the matching buys cost.
    """

    symbol: Optional[str]
    total_trades: int = 0
    buy_trades: int = 0
    sell_trades: int = 0
    total_pnl: Decimal = Decimal("0")
    winning_trades: int = 0
    losing_trades: int = 0

    @property
    def win_rate(self) -> Decimal:
        closed = self.winning_trades + self.losing_trades
        if closed == 0:
            return Decimal("0")
        return Decimal(self.winning_trades) / Decimal(closed) * Decimal("100")
