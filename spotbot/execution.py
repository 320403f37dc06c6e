"""
Order execution protocol.

Sequences that place orders against the exchange gateway, wait for fills
and commit the result to the store as one atomic transition:

- buy:       size from the quote notional and the ask, check balance and
             exchange minimums, limit buy, poll for fill, commit entry
             (optionally protected by an OCO bracket)
- sell:      limit sell just under the bid, poll for fill, commit exit
- bracket:   take-profit / stop-loss pair around the buy price, no wait
- emergency: cancel the bracket, aggressive limit sell under the bid,
             no wait; the order id is stored on the position

Non-fatal problems (exchange down, funds, rejections, timeouts) come back
as ``ExecutionResult`` values. ``PersistenceWriteFailure`` is raised: a
filled order whose commit failed leaves exchange and store out of step.
"""

import asyncio
import time
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from .config import TradingConfig
from .errors import (
    ExchangeUnavailable,
    ExecutionResult,
    InsufficientFunds,
    OrderRejected,
    Outcome,
    PersistenceWriteFailure,
    TradingError,
)
from .exchange import BracketHandle, ExchangeGateway, OrderSide, OrderState, OrderStatus, split_symbol
from .logging_setup import logger, trade_logger
from .persistence_sqlite import SQLiteStore
from .position import HUNDRED, Position
from .trade import Trade


class SystemClock:
    """Monotonic time and asyncio sleep; tests substitute a fake."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def _pct(value: Decimal) -> Decimal:
    return value / HUNDRED


class OrderExecutor:
    """Runs the order sequences for every symbol against one gateway and store."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: SQLiteStore,
        config: TradingConfig,
        poll_interval: float = 1.0,
        clock=None,
    ):
        self.gateway = gateway
        self.store = store
        self.config = config
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

    @property
    def fill_timeout(self) -> float:
        return self.config.order_fill_timeout_ms / 1000

    # --- fill polling ---
    async def wait_for_fill(self, order_id: str, symbol: str, timeout: Optional[float] = None) -> Optional[OrderStatus]:
        """Poll the order until it reaches a final state or ``timeout`` elapses.

        Returns the last status seen; a status still OPEN means the wait
        timed out. Fetch errors, including a rejected status query, are
        logged and retried at the next poll.
        Returns None if no status could be fetched at all.
        """
        timeout = self.fill_timeout if timeout is None else timeout
        deadline = self.clock.monotonic() + timeout
        last: Optional[OrderStatus] = None
        while True:
            try:
                last = await self.gateway.fetch_order(order_id, symbol)
            except (ExchangeUnavailable, OrderRejected) as e:
                # -2013 "order does not exist" can lag placement; the order may still be live
                logger.warning(f"Order status poll failed | symbol={symbol} order_id={order_id} error={e}")
            else:
                if last.state.is_final:
                    return last
            if self.clock.monotonic() >= deadline:
                return last
            await self.clock.sleep(self.poll_interval)

    async def _cancel_and_refresh(self, order_id: str, symbol: str, last: Optional[OrderStatus]) -> Optional[OrderStatus]:
        """Cancel a timed-out order and return its final status (to catch late partial fills)."""
        try:
            await self.gateway.cancel_order(order_id, symbol)
            logger.warning(f"Order canceled after timeout | symbol={symbol} order_id={order_id}")
        except TradingError as e:
            logger.warning(f"Cancel after timeout failed | symbol={symbol} order_id={order_id} error={e}")
        try:
            return await self.gateway.fetch_order(order_id, symbol)
        except TradingError as e:
            logger.warning(f"Could not re-read order after cancel | symbol={symbol} order_id={order_id} error={e}")
            return last

    # --- store helpers ---
    async def _commit(self, fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except PersistenceWriteFailure as e:
            logger.critical(
                f"Persistence failure after exchange fill; exchange and store may diverge | "
                f"symbol={e.symbol} error={e}"
            )
            raise
        for arg in args:
            if isinstance(arg, Trade):
                trade_logger.info(
                    f"{arg.side.value} symbol={arg.symbol} price={arg.price} qty={arg.quantity} "
                    f"notional={arg.notional:.4f} order_id={arg.order_id}"
                )

    async def record_exit(
        self,
        symbol: str,
        price: Decimal,
        quantity: Decimal,
        order_id: Optional[str],
        position: Position,
        full: bool = False,
    ) -> ExecutionResult:
        """Commit a confirmed sell: full exit, or a partial one that leaves the rest open.

        ``full`` closes the position even when ``quantity`` is below the
        stored size, for sells capped by the free balance.
        """
        trade = Trade.sell(symbol, price, quantity, order_id)
        pnl = (price - position.buy_price) * quantity if position.is_active() else Decimal("0")
        if position.is_active() and quantity < position.quantity and not full:
            await self._commit(self.store.reduce_position, symbol, trade)
            logger.warning(
                f"Partial exit recorded | symbol={symbol} order_id={order_id} sold={quantity} "
                f"of={position.quantity} price={price}"
            )
        else:
            await self._commit(self.store.commit_exit, symbol, trade)
            logger.info(f"Position closed | symbol={symbol} order_id={order_id} price={price} qty={quantity} pnl={pnl:.4f}")
        return ExecutionResult(Outcome.FILLED, symbol, order_id=order_id, price=price, quantity=quantity)

    # --- buy ---
    async def buy(self, symbol: str) -> ExecutionResult:
        try:
            return await self._buy(symbol)
        except PersistenceWriteFailure:
            raise
        except TradingError as e:
            level = "INFO" if isinstance(e, InsufficientFunds) else "WARNING"
            logger.log(level, f"Buy aborted | symbol={symbol} kind={e.kind.value} error={e}")
            return ExecutionResult.failure(symbol, e)

    async def _buy(self, symbol: str) -> ExecutionResult:
        cfg = self.config
        _, quote = split_symbol(symbol)
        ticker = await self.gateway.fetch_ticker(symbol)
        ask = ticker.ask or ticker.last
        raw_qty = cfg.notional_amount_per_trade / ask

        price = self.gateway.round_price(symbol, ask * (1 + _pct(cfg.buy_price_margin_percent)))
        qty = self.gateway.round_quantity(symbol, raw_qty)

        balances = await self.gateway.fetch_balance()
        free = balances[quote].free if quote in balances else Decimal("0")
        required = qty * price
        if free < required:
            raise InsufficientFunds(f"Insufficient {quote}: free={free} required={required}", symbol=symbol)
        self._check_minimums(symbol, price, qty)

        handle = await self.gateway.create_limit_order(symbol, OrderSide.BUY, qty, price)
        logger.info(f"Entry order placed | symbol={symbol} order_id={handle.id} price={price} qty={qty}")

        status = await self.wait_for_fill(handle.id, symbol)
        if status is None or status.state is OrderState.OPEN:
            status = await self._cancel_and_refresh(handle.id, symbol, status)
            if status is None or status.filled <= 0:
                return ExecutionResult(
                    Outcome.TIMED_OUT, symbol, order_id=handle.id, price=price, quantity=qty,
                    message=f"buy not filled within {self.fill_timeout:.0f}s",
                )
            logger.warning(f"Entry partially filled before cancel | symbol={symbol} order_id={handle.id} filled={status.filled}")
        elif status.state is not OrderState.CLOSED and status.filled <= 0:
            logger.warning(f"Entry order ended unfilled | symbol={symbol} order_id={handle.id} state={status.state.value}")
            return ExecutionResult(Outcome.CANCELED, symbol, order_id=handle.id, message=status.state.value)

        fill_price = status.average or price
        fill_qty = status.filled or qty
        position = Position.opened(symbol, fill_price, fill_qty, handle.id)
        if cfg.use_oco_orders:
            position = await self._protect(position)

        await self._commit(self.store.commit_entry, symbol, position, Trade.buy(symbol, fill_price, fill_qty, handle.id))
        logger.info(
            f"Position opened | symbol={symbol} order_id={handle.id} price={fill_price} qty={fill_qty} "
            f"type={position.order_type.value}"
        )
        return ExecutionResult(Outcome.FILLED, symbol, order_id=handle.id, price=fill_price, quantity=fill_qty)

    def _check_minimums(self, symbol: str, price: Decimal, qty: Decimal) -> None:
        limits = self.gateway.get_symbol_limits(symbol)
        if qty <= 0 or qty < limits.min_qty:
            raise OrderRejected(f"Quantity {qty} below minimum {limits.min_qty} for {symbol}", symbol=symbol)
        if price * qty < limits.min_notional:
            raise OrderRejected(
                f"Order value {price * qty} below minimum notional {limits.min_notional} for {symbol}", symbol=symbol
            )

    async def _protect(self, position: Position) -> Position:
        """Attach an OCO bracket; on failure keep the position indicator-managed."""
        try:
            bracket = await self.place_bracket(position)
        except (ExchangeUnavailable, OrderRejected, InsufficientFunds) as e:
            logger.warning(f"Bracket placement failed, managing exit with indicators | symbol={position.symbol} error={e}")
            return position
        return position.with_bracket(bracket.list_id, bracket.take_profit_price, bracket.stop_loss_price)

    # --- bracket ---
    async def place_bracket(self, position: Position) -> BracketHandle:
        cfg = self.config
        symbol = position.symbol
        tp = self.gateway.round_price(symbol, position.buy_price * (1 + _pct(cfg.oco_take_profit_percent)))
        sl = self.gateway.round_price(symbol, position.buy_price * (1 - _pct(cfg.oco_stop_loss_percent)))
        stop_limit = self.gateway.round_price(symbol, sl * (1 - _pct(cfg.oco_stop_limit_offset_percent)), ROUND_DOWN)
        qty = self.gateway.round_quantity(symbol, position.quantity)
        bracket = await self.gateway.create_bracket_sell_order(symbol, qty, tp, sl, stop_limit)
        logger.info(
            f"Bracket placed | symbol={symbol} list_id={bracket.list_id} tp={tp} sl={sl} stop_limit={stop_limit} qty={qty}"
        )
        return bracket

    # --- sell ---
    async def _sellable_quantity(self, symbol: str, position: Position) -> Decimal:
        """Position quantity, capped by the free base balance (fees may have eaten some)."""
        base, _ = split_symbol(symbol)
        qty = position.quantity
        balances = await self.gateway.fetch_balance()
        if base in balances and balances[base].free < qty:
            logger.warning(f"Free balance below position size | symbol={symbol} free={balances[base].free} position={qty}")
            qty = balances[base].free
        return self.gateway.round_quantity(symbol, qty)

    async def sell(self, symbol: str, position: Position, reason: str = "") -> ExecutionResult:
        try:
            return await self._sell(symbol, position, reason)
        except PersistenceWriteFailure:
            raise
        except TradingError as e:
            logger.warning(f"Sell aborted | symbol={symbol} kind={e.kind.value} error={e}")
            return ExecutionResult.failure(symbol, e)

    async def _sell(self, symbol: str, position: Position, reason: str) -> ExecutionResult:
        ticker = await self.gateway.fetch_ticker(symbol)
        bid = ticker.bid or ticker.last
        price = self.gateway.round_price(symbol, bid * (1 - _pct(self.config.sell_price_margin_percent)), ROUND_DOWN)
        qty = await self._sellable_quantity(symbol, position)
        self._check_minimums(symbol, price, qty)

        handle = await self.gateway.create_limit_order(symbol, OrderSide.SELL, qty, price)
        logger.info(f"Exit order placed | symbol={symbol} order_id={handle.id} price={price} qty={qty} reason={reason}")

        status = await self.wait_for_fill(handle.id, symbol)
        if status is None or status.state is OrderState.OPEN:
            status = await self._cancel_and_refresh(handle.id, symbol, status)
            if status is None or status.filled <= 0:
                return ExecutionResult(
                    Outcome.TIMED_OUT, symbol, order_id=handle.id, price=price, quantity=qty,
                    message=f"sell not filled within {self.fill_timeout:.0f}s",
                )
        elif status.state is not OrderState.CLOSED and status.filled <= 0:
            logger.warning(f"Exit order ended unfilled | symbol={symbol} order_id={handle.id} state={status.state.value}")
            return ExecutionResult(Outcome.CANCELED, symbol, order_id=handle.id, message=status.state.value)

        return await self.record_exit(
            symbol, status.average or price, status.filled or qty, handle.id, position,
            full=status.state is OrderState.CLOSED,
        )

    # --- emergency ---
    async def emergency_exit(self, symbol: str, position: Position) -> ExecutionResult:
        try:
            return await self._emergency_exit(symbol, position)
        except PersistenceWriteFailure:
            raise
        except TradingError as e:
            logger.error(f"Emergency exit failed | symbol={symbol} kind={e.kind.value} error={e}")
            return ExecutionResult.failure(symbol, e)

    async def _emergency_exit(self, symbol: str, position: Position) -> ExecutionResult:
        detach = False
        if position.is_oco():
            try:
                await self.gateway.cancel_bracket_order(symbol, position.oco_order_list_id)
                logger.warning(f"Bracket canceled for emergency exit | symbol={symbol} list_id={position.oco_order_list_id}")
            except OrderRejected as e:
                # The bracket may have resolved in the meantime
                status = await self.gateway.fetch_bracket_order(position.oco_order_list_id, symbol)
                if status.was_filled:
                    logger.info(f"Bracket already filled, no emergency sell needed | symbol={symbol}")
                    return await self.record_exit(
                        symbol, status.fill_price, status.filled_quantity,
                        f"{status.list_id}:{status.filled_order_id}", position, full=True,
                    )
                logger.warning(f"Bracket cancel failed | symbol={symbol} error={e}")
            detach = True

        ticker = await self.gateway.fetch_ticker(symbol)
        bid = ticker.bid or ticker.last
        price = self.gateway.round_price(symbol, bid * (1 - _pct(self.config.emergency_price_margin_percent)), ROUND_DOWN)
        qty = await self._sellable_quantity(symbol, position)
        handle = await self.gateway.create_limit_order(symbol, OrderSide.SELL, qty, price)
        await self._commit(self.store.set_exit_order, symbol, handle.id, detach)
        logger.warning(f"Emergency sell placed | symbol={symbol} order_id={handle.id} price={price} qty={qty}")
        return ExecutionResult(Outcome.PLACED, symbol, order_id=handle.id, price=price, quantity=qty)
