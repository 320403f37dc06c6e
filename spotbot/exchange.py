"""
Exchange gateway interface and value types.

The gateway is a stateless-per-call facade over one spot exchange: market
data, limit orders, OCO bracket orders and balances. All prices and
quantities are Decimal. Implementations:

- ``InMemoryExchange``: deterministic gateway for tests and offline runs;
  tests drive fills, rejections, bracket resolution and failures.
- ``spotbot.binance_adapter.BinanceAdapter``: async REST gateway.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import ExchangeUnavailable, InsufficientFunds, OrderRejected
from .indicators import OHLCV
from .position import now_ms


def split_symbol(symbol: str) -> Tuple[str, str]:
    """'BTC/USDC' -> ('BTC', 'USDC')"""
    base, _, quote = symbol.partition("/")
    if not base or not quote:
        raise ValueError(f"Invalid symbol {symbol!r}, expected BASE/QUOTE")
    return base, quote


def quantize_step(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    """Round ``value`` to a multiple of ``step`` (tick or lot size)."""
    if step <= 0:
        return value
    units = (value / step).quantize(Decimal("1"), rounding=rounding)
    return units * step


def decimals_of(step: Decimal) -> int:
    exponent = step.normalize().as_tuple().exponent
    return max(0, -exponent)


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderState(Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_final(self) -> bool:
        return self is not OrderState.OPEN


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last: Decimal
    bid: Decimal
    ask: Decimal
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    volume: Optional[Decimal] = None
    timestamp: int = 0


@dataclass(frozen=True)
class OrderHandle:
    id: str
    symbol: str
    side: OrderSide
    price: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class OrderStatus:
    id: str
    symbol: str
    state: OrderState
    filled: Decimal = Decimal("0")
    average: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    side: Optional[OrderSide] = None

    @property
    def remaining(self) -> Decimal:
        if self.amount is None:
            return Decimal("0")
        return self.amount - self.filled


@dataclass(frozen=True)
class BracketHandle:
    list_id: str
    symbol: str
    take_profit_price: Decimal
    stop_loss_price: Decimal
    stop_limit_price: Decimal
    quantity: Decimal
    order_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BracketStatus:
    """Order-list state of an OCO bracket.

    ``list_order_status`` follows the exchange vocabulary: EXECUTING while
    both legs are live, ALL_DONE once one leg filled (or both were
    canceled), REJECT if the exchange refused the list.
    """

    list_id: str
    symbol: str
    list_order_status: str
    fill_price: Optional[Decimal] = None
    filled_quantity: Optional[Decimal] = None
    filled_order_id: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.list_order_status == "ALL_DONE"

    @property
    def was_filled(self) -> bool:
        return self.is_done and self.fill_price is not None and bool(self.filled_quantity)


@dataclass(frozen=True)
class AssetBalance:
    free: Decimal = Decimal("0")
    used: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.used


@dataclass(frozen=True)
class SymbolLimits:
    min_qty: Decimal
    min_notional: Decimal
    tick_size: Decimal
    step_size: Decimal

    @property
    def price_precision(self) -> int:
        return decimals_of(self.tick_size)

    @property
    def qty_precision(self) -> int:
        return decimals_of(self.step_size)


class ExchangeGateway(ABC):
    """Abstract async exchange gateway.

    Network failures surface as ``ExchangeUnavailable``; orders the exchange
    refuses surface as ``OrderRejected``. Rounding uses the cached symbol
    limits, so ``load_markets`` must run before the first order.
    """

    def __init__(self):
        self.markets: Dict[str, SymbolLimits] = {}

    async def load_markets(self, symbols: Optional[List[str]] = None) -> Dict[str, SymbolLimits]:
        return self.markets

    async def close(self) -> None:
        return None

    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[OHLCV]:
        """Return up to ``limit`` closed-or-current candles, oldest first."""

    @abstractmethod
    async def fetch_ticker(self, symbol: str) -> Ticker:
        pass

    @abstractmethod
    async def create_limit_order(
        self, symbol: str, side: OrderSide, quantity: Decimal, price: Decimal
    ) -> OrderHandle:
        pass

    @abstractmethod
    async def fetch_order(self, order_id: str, symbol: str) -> OrderStatus:
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> None:
        pass

    @abstractmethod
    async def create_bracket_sell_order(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit_price: Decimal,
        stop_loss_price: Decimal,
        stop_limit_price: Decimal,
    ) -> BracketHandle:
        """Place a one-cancels-other sell: a take-profit limit and a stop-limit."""

    @abstractmethod
    async def fetch_bracket_order(self, list_id: str, symbol: str) -> BracketStatus:
        pass

    @abstractmethod
    async def cancel_bracket_order(self, symbol: str, list_id: str) -> None:
        pass

    @abstractmethod
    async def fetch_balance(self) -> Dict[str, AssetBalance]:
        pass

    def get_symbol_limits(self, symbol: str) -> SymbolLimits:
        try:
            return self.markets[symbol]
        except KeyError:
            raise ExchangeUnavailable(f"No market data loaded for {symbol}", symbol=symbol)

    def round_price(self, symbol: str, price: Decimal, rounding: str = ROUND_HALF_UP) -> Decimal:
        return quantize_step(price, self.get_symbol_limits(symbol).tick_size, rounding)

    def round_quantity(self, symbol: str, quantity: Decimal) -> Decimal:
        """Round down to the lot step so we never sell more than we hold."""
        return quantize_step(quantity, self.get_symbol_limits(symbol).step_size, ROUND_DOWN)


@dataclass
class _SimOrder:
    id: str
    symbol: str
    side: OrderSide
    price: Decimal
    amount: Decimal
    state: OrderState = OrderState.OPEN
    filled: Decimal = Decimal("0")
    average: Optional[Decimal] = None
    list_id: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    def status(self) -> OrderStatus:
        return OrderStatus(
            id=self.id,
            symbol=self.symbol,
            state=self.state,
            filled=self.filled,
            average=self.average,
            amount=self.amount,
            side=self.side,
        )


@dataclass
class _SimBracket:
    list_id: str
    symbol: str
    take_profit: _SimOrder
    stop_loss: _SimOrder
    stop_price: Decimal

    @property
    def legs(self) -> Tuple[_SimOrder, _SimOrder]:
        return (self.take_profit, self.stop_loss)


class InMemoryExchange(ExchangeGateway):
    """Gateway simulation used by tests and offline runs.

    Orders stay open until a test fills them (``fill_order``) unless
    ``auto_fill`` is set, in which case limit orders fill at their limit
    price as soon as they are placed. ``fail_next(method, error)`` makes
    the next call of ``method`` raise ``error`` once.
    """

    DEFAULT_LIMITS = SymbolLimits(
        min_qty=Decimal("0.00001"),
        min_notional=Decimal("5"),
        tick_size=Decimal("0.01"),
        step_size=Decimal("0.00001"),
    )

    def __init__(self, auto_fill: bool = False, enforce_balance: bool = True):
        super().__init__()
        self.auto_fill = auto_fill
        self.enforce_balance = enforce_balance
        self.tickers: Dict[str, Ticker] = {}
        self.candles: Dict[str, List[OHLCV]] = {}
        self.balances: Dict[str, AssetBalance] = {}
        self.orders: Dict[str, _SimOrder] = {}
        self.brackets: Dict[str, _SimBracket] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._failures: Dict[str, List[Exception]] = {}
        self.next_id = 1

    # --- test controls ---
    def add_market(self, symbol: str, limits: Optional[SymbolLimits] = None) -> None:
        self.markets[symbol] = limits or self.DEFAULT_LIMITS

    def set_ticker(
        self,
        symbol: str,
        last: Decimal,
        bid: Optional[Decimal] = None,
        ask: Optional[Decimal] = None,
    ) -> None:
        last = Decimal(str(last))
        self.tickers[symbol] = Ticker(
            symbol=symbol,
            last=last,
            bid=Decimal(str(bid)) if bid is not None else last,
            ask=Decimal(str(ask)) if ask is not None else last,
            high=last,
            low=last,
            volume=Decimal("0"),
            timestamp=now_ms(),
        )

    def set_candles(self, symbol: str, closes: List[Decimal]) -> None:
        start = now_ms() - len(closes) * 60_000
        self.candles[symbol] = [
            OHLCV(start + i * 60_000, Decimal(str(c)), Decimal(str(c)), Decimal(str(c)), Decimal(str(c)), Decimal("1"))
            for i, c in enumerate(closes)
        ]

    def set_balance(self, asset: str, free: Decimal) -> None:
        self.balances[asset] = AssetBalance(free=Decimal(str(free)))

    def fail_next(self, method: str, error: Exception) -> None:
        self._failures.setdefault(method, []).append(error)

    def fill_order(self, order_id: str, price: Optional[Decimal] = None, quantity: Optional[Decimal] = None) -> None:
        """Fill an open order fully, or partially when ``quantity`` is less than its amount."""
        order = self.orders[order_id]
        qty = order.amount if quantity is None else Decimal(str(quantity))
        fill_price = order.price if price is None else Decimal(str(price))
        order.filled = qty
        order.average = fill_price
        if qty >= order.amount:
            order.state = OrderState.CLOSED
        self._settle(order.symbol, order.side, qty, fill_price)

    def set_order_state(self, order_id: str, state: OrderState) -> None:
        self.orders[order_id].state = state

    def resolve_bracket(self, list_id: str, leg: str = "take_profit", price: Optional[Decimal] = None) -> None:
        """Fill one leg of a bracket and cancel the other."""
        bracket = self.brackets[list_id]
        filled, other = (
            (bracket.take_profit, bracket.stop_loss)
            if leg == "take_profit"
            else (bracket.stop_loss, bracket.take_profit)
        )
        self.fill_order(filled.id, price=price)
        other.state = OrderState.CANCELED

    def open_orders(self, symbol: Optional[str] = None) -> List[_SimOrder]:
        return [
            o for o in self.orders.values()
            if o.state is OrderState.OPEN and (symbol is None or o.symbol == symbol)
        ]

    # --- internals ---
    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _gen_id(self) -> str:
        oid = str(self.next_id)
        self.next_id += 1
        return oid

    def _balance(self, asset: str) -> AssetBalance:
        return self.balances.get(asset, AssetBalance())

    def _settle(self, symbol: str, side: OrderSide, qty: Decimal, price: Decimal) -> None:
        base, quote = split_symbol(symbol)
        notional = qty * price
        b, q = self._balance(base), self._balance(quote)
        if side is OrderSide.BUY:
            self.balances[base] = replace(b, free=b.free + qty)
            self.balances[quote] = replace(q, free=q.free - notional)
        else:
            self.balances[base] = replace(b, free=max(Decimal("0"), b.free - qty))
            self.balances[quote] = replace(q, free=q.free + notional)

    def _ticker(self, symbol: str) -> Ticker:
        try:
            return self.tickers[symbol]
        except KeyError:
            raise ExchangeUnavailable(f"No ticker for {symbol}", symbol=symbol)

    def _new_order(self, symbol: str, side: OrderSide, quantity: Decimal, price: Decimal, list_id: Optional[str] = None) -> _SimOrder:
        order = _SimOrder(
            id=self._gen_id(), symbol=symbol, side=side, price=price, amount=quantity, list_id=list_id
        )
        self.orders[order.id] = order
        return order

    # --- gateway API ---
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[OHLCV]:
        self._record("fetch_candles", symbol, timeframe, limit)
        return list(self.candles.get(symbol, []))[-limit:]

    async def fetch_ticker(self, symbol: str) -> Ticker:
        self._record("fetch_ticker", symbol)
        return self._ticker(symbol)

    async def create_limit_order(self, symbol: str, side: OrderSide, quantity: Decimal, price: Decimal) -> OrderHandle:
        self._record("create_limit_order", symbol, side, quantity, price)
        limits = self.get_symbol_limits(symbol)
        if quantity < limits.min_qty or quantity * price < limits.min_notional:
            raise OrderRejected(f"Filter failure for {symbol}: qty={quantity} price={price}", symbol=symbol)
        if self.enforce_balance:
            base, quote = split_symbol(symbol)
            if side is OrderSide.BUY and self._balance(quote).free < quantity * price:
                raise InsufficientFunds(f"Account has insufficient {quote}", symbol=symbol)
            if side is OrderSide.SELL and self._balance(base).free < quantity:
                raise InsufficientFunds(f"Account has insufficient {base}", symbol=symbol)
        order = self._new_order(symbol, side, quantity, price)
        if self.auto_fill:
            self.fill_order(order.id)
        return OrderHandle(order.id, symbol, side, price, quantity)

    async def fetch_order(self, order_id: str, symbol: str) -> OrderStatus:
        self._record("fetch_order", order_id, symbol)
        try:
            return self.orders[order_id].status()
        except KeyError:
            raise OrderRejected(f"Unknown order {order_id}", symbol=symbol)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        self._record("cancel_order", order_id, symbol)
        order = self.orders.get(order_id)
        if order is None or order.state is not OrderState.OPEN:
            raise OrderRejected(f"Order {order_id} is not open", symbol=symbol)
        order.state = OrderState.CANCELED

    async def create_bracket_sell_order(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit_price: Decimal,
        stop_loss_price: Decimal,
        stop_limit_price: Decimal,
    ) -> BracketHandle:
        self._record("create_bracket_sell_order", symbol, quantity, take_profit_price, stop_loss_price, stop_limit_price)
        list_id = f"L{self._gen_id()}"
        tp = self._new_order(symbol, OrderSide.SELL, quantity, take_profit_price, list_id)
        sl = self._new_order(symbol, OrderSide.SELL, quantity, stop_limit_price, list_id)
        self.brackets[list_id] = _SimBracket(list_id, symbol, tp, sl, stop_loss_price)
        return BracketHandle(
            list_id=list_id,
            symbol=symbol,
            take_profit_price=take_profit_price,
            stop_loss_price=stop_loss_price,
            stop_limit_price=stop_limit_price,
            quantity=quantity,
            order_ids=(tp.id, sl.id),
        )

    async def fetch_bracket_order(self, list_id: str, symbol: str) -> BracketStatus:
        self._record("fetch_bracket_order", list_id, symbol)
        bracket = self.brackets.get(list_id)
        if bracket is None:
            raise OrderRejected(f"Unknown order list {list_id}", symbol=symbol)
        if any(leg.state is OrderState.OPEN for leg in bracket.legs):
            return BracketStatus(list_id, symbol, "EXECUTING")
        for leg in bracket.legs:
            if leg.state is OrderState.CLOSED:
                return BracketStatus(list_id, symbol, "ALL_DONE", leg.average, leg.filled, leg.id)
        return BracketStatus(list_id, symbol, "ALL_DONE")

    async def cancel_bracket_order(self, symbol: str, list_id: str) -> None:
        self._record("cancel_bracket_order", symbol, list_id)
        bracket = self.brackets.get(list_id)
        if bracket is None or not any(leg.state is OrderState.OPEN for leg in bracket.legs):
            raise OrderRejected(f"Order list {list_id} is not open", symbol=symbol)
        for leg in bracket.legs:
            if leg.state is OrderState.OPEN:
                leg.state = OrderState.CANCELED

    async def fetch_balance(self) -> Dict[str, AssetBalance]:
        self._record("fetch_balance")
        return dict(self.balances)
