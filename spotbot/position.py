"""
Per-symbol position and bot status.

A ``Position`` is the persisted record of coins the bot currently holds for
one symbol. It is "active" once the symbol, buy price and quantity are all
set; an empty ``Position(symbol=None)`` stands for "no position". The
``BotStatus`` row mirrors it: ``IN_POSITION`` exactly when the position is
active. Both are written together by the persistence store.

The high-water mark used by the secure-profit trailing stop lives on the
position itself (``highest_price``). It starts at the buy price and only
ever moves up while the position stays open; there is no other copy of it.

Examples:
    >>> from decimal import Decimal
    >>> pos = Position.opened(
    ...     symbol="BTC/USDC",
    ...     buy_price=Decimal("100"),
    ...     quantity=Decimal("0.5"),
    ...     buy_order_id="42",
    ... )
    >>> pos.is_active()
    True
    >>> pos.unrealized_pnl_percent(Decimal("102"))
    Decimal('2.00')
    >>> pos.raise_high_water_mark(Decimal("102"))
    True
    >>> pos.drawdown_percent(Decimal("101.4")).quantize(Decimal("0.001"))
    Decimal('0.588')
"""

import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal, getcontext
from enum import Enum
from typing import Any, Dict, Optional

getcontext().prec = 28

HUNDRED = Decimal("100")


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class OrderType(Enum):
    LIMIT = "LIMIT"  # exit managed by indicators and the trailing stop
    OCO = "OCO"      # exit delegated to an exchange bracket order


class BotState(Enum):
    IDLE = "IDLE"
    IN_POSITION = "IN_POSITION"


@dataclass(frozen=True)
class BotStatus:
    symbol: str
    state: BotState = BotState.IDLE
    updated_at: Optional[int] = None

    @property
    def in_position(self) -> bool:
        return self.state is BotState.IN_POSITION


def _dec(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass
class Position:
    """Holdings for one symbol.

    Attributes:
        symbol: Trading pair, e.g. "BTC/USDC"
        buy_price: Average fill price of the entry order
        quantity: Filled quantity of the entry order
        buy_order_id: Exchange id of the entry order
        order_type: LIMIT (indicator-managed) or OCO (bracket-managed)
        oco_order_list_id: Exchange order-list id of the bracket (OCO only)
        take_profit_price: Bracket take-profit leg (OCO only)
        stop_loss_price: Bracket stop-loss leg (OCO only)
        highest_price: High-water mark since entry
        exit_order_id: Emergency sell placed but not yet confirmed filled
        created_at: Entry time, epoch ms
        updated_at: Last write, epoch ms

    Invariants:
        - highest_price >= buy_price while active
        - the three bracket fields are set iff order_type is OCO
    """

    symbol: Optional[str] = None
    buy_price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    buy_order_id: Optional[str] = None
    order_type: OrderType = OrderType.LIMIT
    oco_order_list_id: Optional[str] = None
    take_profit_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    highest_price: Optional[Decimal] = None
    exit_order_id: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def opened(
        cls,
        symbol: str,
        buy_price: Decimal,
        quantity: Decimal,
        buy_order_id: Optional[str],
        timestamp: Optional[int] = None,
    ) -> "Position":
        """Build a fresh indicator-managed position from an entry fill."""
        ts = timestamp if timestamp is not None else now_ms()
        return cls(
            symbol=symbol,
            buy_price=buy_price,
            quantity=quantity,
            buy_order_id=buy_order_id,
            order_type=OrderType.LIMIT,
            highest_price=buy_price,
            created_at=ts,
            updated_at=ts,
        )

    def with_bracket(
        self, order_list_id: str, take_profit_price: Decimal, stop_loss_price: Decimal
    ) -> "Position":
        """Return a copy managed by the given exchange bracket order."""
        return replace(
            self,
            order_type=OrderType.OCO,
            oco_order_list_id=str(order_list_id),
            take_profit_price=take_profit_price,
            stop_loss_price=stop_loss_price,
        )

    def is_active(self) -> bool:
        return bool(self.symbol) and self.buy_price is not None and bool(self.quantity)

    def is_oco(self) -> bool:
        return self.order_type is OrderType.OCO and self.oco_order_list_id is not None

    @property
    def exit_pending(self) -> bool:
        return self.exit_order_id is not None

    @property
    def cost(self) -> Decimal:
        if not self.is_active():
            return Decimal("0")
        return self.buy_price * self.quantity

    def current_value(self, price: Decimal) -> Decimal:
        return price * (self.quantity or Decimal("0"))

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        """Quote-currency P&L of the open quantity at ``price``."""
        if not self.is_active():
            return Decimal("0")
        return (price - self.buy_price) * self.quantity

    def unrealized_pnl_percent(self, price: Decimal) -> Decimal:
        if not self.is_active() or self.buy_price == 0:
            return Decimal("0")
        return (price - self.buy_price) / self.buy_price * HUNDRED

    def drawdown_percent(self, price: Decimal) -> Decimal:
        """Percent retreat of ``price`` from the high-water mark (0 at or above it)."""
        high = self.highest_price or self.buy_price
        if high is None or high == 0 or price >= high:
            return Decimal("0")
        return (high - price) / high * HUNDRED

    def raise_high_water_mark(self, price: Decimal) -> bool:
        """Move ``highest_price`` up to ``price``; returns True if it changed.

        Never lowers the mark. Persist after a True result.
        """
        if self.highest_price is None or price > self.highest_price:
            self.highest_price = price
            return True
        return False

    def potential_take_profit(self) -> Optional[Decimal]:
        if self.take_profit_price is None or not self.is_active():
            return None
        return (self.take_profit_price - self.buy_price) * self.quantity

    def potential_stop_loss(self) -> Optional[Decimal]:
        if self.stop_loss_price is None or not self.is_active():
            return None
        return (self.stop_loss_price - self.buy_price) * self.quantity

    def bracket_summary(self) -> str:
        if not self.is_oco():
            return "no bracket"
        return (
            f"list_id={self.oco_order_list_id} tp={self.take_profit_price} "
            f"sl={self.stop_loss_price} potential_profit={self.potential_take_profit()} "
            f"potential_loss={self.potential_stop_loss()}"
        )

    def age_seconds(self, now: Optional[int] = None) -> Optional[float]:
        if self.created_at is None:
            return None
        return ((now if now is not None else now_ms()) - self.created_at) / 1000

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence; decimals become strings."""
        return {
            "symbol": self.symbol,
            "buy_price": _str(self.buy_price),
            "quantity": _str(self.quantity),
            "buy_order_id": self.buy_order_id,
            "order_type": self.order_type.value,
            "oco_order_list_id": self.oco_order_list_id,
            "take_profit_price": _str(self.take_profit_price),
            "stop_loss_price": _str(self.stop_loss_price),
            "highest_price": _str(self.highest_price),
            "exit_order_id": self.exit_order_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Position":
        """Inverse of to_dict; also accepts sqlite rows converted to dicts."""
        return Position(
            symbol=d.get("symbol"),
            buy_price=_dec(d.get("buy_price")),
            quantity=_dec(d.get("quantity")),
            buy_order_id=d.get("buy_order_id"),
            order_type=OrderType(d.get("order_type") or OrderType.LIMIT.value),
            oco_order_list_id=d.get("oco_order_list_id"),
            take_profit_price=_dec(d.get("take_profit_price")),
            stop_loss_price=_dec(d.get("stop_loss_price")),
            highest_price=_dec(d.get("highest_price")),
            exit_order_id=d.get("exit_order_id"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def __str__(self) -> str:
        if not self.is_active():
            return "Position(empty)"
        opened = ""
        if self.created_at is not None:
            opened = datetime.fromtimestamp(self.created_at / 1000, tz=timezone.utc).isoformat()
        return (
            f"Position({self.symbol} {self.order_type.value} qty={self.quantity} "
            f"buy={self.buy_price} high={self.highest_price} opened={opened})"
        )
