"""
Per-symbol position state machine.

States are IDLE and IN_POSITION; an open position is either
indicator-managed (LIMIT) or bracket-managed (OCO). Each symbol owns one
``PositionStateMachine``, which turns market snapshots and exchange state
into transitions:

    IDLE --buy signal, funds, fill--> IN_POSITION   (commit_entry)
    IN_POSITION --any exit fill--> IDLE             (commit_exit)
    IN_POSITION --tick--> IN_POSITION               (high-water mark update)

The store is the only source of state; nothing here caches a position
across ticks.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import ExecutionResult, Outcome, TradingError
from .exchange import ExchangeGateway, OrderState, Ticker
from .execution import OrderExecutor
from .exit_strategy import ExitAction, ExitDecision, ExitStrategyEvaluator
from .indicators import Signal, SignalAnalysis, SignalGenerator, TechnicalIndicators
from .logging_setup import logger
from .persistence_sqlite import SQLiteStore
from .position import BotState, Position


@dataclass(frozen=True)
class MarketSnapshot:
    """What one symbol looks like at the start of its turn in a tick."""

    symbol: str
    ticker: Ticker
    indicators: TechnicalIndicators
    analysis: SignalAnalysis
    position: Position
    state: BotState

    @property
    def price(self) -> Decimal:
        return self.ticker.last

    @property
    def rsi(self) -> Decimal:
        return self.indicators.rsi

    @property
    def signal(self) -> Signal:
        return self.analysis.signal

    @property
    def can_enter(self) -> bool:
        return self.state is BotState.IDLE and not self.position.is_active()


@dataclass(frozen=True)
class ManageOutcome:
    decision: Optional[ExitDecision]
    result: Optional[ExecutionResult] = None


class PositionStateMachine:
    def __init__(
        self,
        symbol: str,
        gateway: ExchangeGateway,
        store: SQLiteStore,
        executor: OrderExecutor,
        signals: SignalGenerator,
        evaluator: ExitStrategyEvaluator,
        timeframe: str = "5m",
        candle_limit: int = 100,
    ):
        self.symbol = symbol
        self.gateway = gateway
        self.store = store
        self.executor = executor
        self.signals = signals
        self.evaluator = evaluator
        self.timeframe = timeframe
        self.candle_limit = candle_limit

    async def position(self) -> Position:
        return await asyncio.to_thread(self.store.get_position, self.symbol)

    async def state(self) -> BotState:
        status = await asyncio.to_thread(self.store.get_status, self.symbol)
        return status.state

    # --- snapshot ---
    async def analyze(self) -> MarketSnapshot:
        candles = await self.gateway.fetch_candles(self.symbol, self.timeframe, self.candle_limit)
        ticker = await self.gateway.fetch_ticker(self.symbol)
        indicators = self.signals.compute_indicators(candles)
        analysis = self.signals.classify(indicators, ticker.last)
        self.signals.log_analysis(self.symbol, ticker.last, indicators, analysis)

        stats = self.signals.market_stats(candles)
        if stats is not None:
            logger.debug(
                f"Market stats | symbol={self.symbol} volatility={stats.volatility:.4f} "
                f"momentum={stats.momentum_percent:.2f}% support={stats.support} "
                f"resistance={stats.resistance} avg_volume={stats.average_volume:.2f}"
            )

        return MarketSnapshot(
            symbol=self.symbol,
            ticker=ticker,
            indicators=indicators,
            analysis=analysis,
            position=await self.position(),
            state=await self.state(),
        )

    # --- IDLE -> IN_POSITION ---
    async def enter(self) -> ExecutionResult:
        position = await self.position()
        if position.is_active():
            return ExecutionResult(Outcome.SKIPPED, self.symbol, message="position already active")
        return await self.executor.buy(self.symbol)

    # --- IN_POSITION ---
    async def manage(self, snapshot: MarketSnapshot) -> ManageOutcome:
        """Run the exit strategy for the open position, if any."""
        position = await self.position()
        if not position.is_active():
            return ManageOutcome(None)
        if position.exit_pending:
            logger.info(f"Exit pending, waiting for confirmation | symbol={self.symbol} order_id={position.exit_order_id}")
            return ManageOutcome(None)

        price = snapshot.price
        decision = self.evaluator.evaluate(position, price, snapshot.analysis.sell_signal)

        if not position.is_oco() and decision.highest_price > (position.highest_price or position.buy_price):
            await asyncio.to_thread(self.store.update_highest_price, self.symbol, decision.highest_price)
            logger.debug(f"High-water mark raised | symbol={self.symbol} highest={decision.highest_price}")

        if decision.action is ExitAction.EMERGENCY_EXIT:
            logger.warning(f"Emergency stop-loss triggered | symbol={self.symbol} {decision.reason}")
            return ManageOutcome(decision, await self.executor.emergency_exit(self.symbol, position))

        if decision.action is ExitAction.CHECK_BRACKET:
            result = await self.check_bracket(position)
            if result is None:
                logger.info(
                    f"Bracket open | symbol={self.symbol} price={price} pnl={decision.pnl_percent:.2f}% "
                    f"{position.bracket_summary()}"
                )
            return ManageOutcome(decision, result)

        if decision.sells:
            logger.info(f"Exit triggered | symbol={self.symbol} action={decision.action.value} {decision.reason}")
            return ManageOutcome(decision, await self.executor.sell(self.symbol, position, decision.action.value))

        self._log_position(position, price, decision)
        return ManageOutcome(decision)

    def _log_position(self, position: Position, price: Decimal, decision: ExitDecision) -> None:
        logger.info(
            f"In position | symbol={self.symbol} buy={position.buy_price} price={price} "
            f"qty={position.quantity} pnl={position.unrealized_pnl(price):.4f} ({decision.pnl_percent:.2f}%) "
            f"high={decision.highest_price} drawdown={decision.drawdown_percent:.2f}%"
        )

    # --- exchange-side resolution ---
    async def reconcile(self) -> Optional[ExecutionResult]:
        """Observe exits that resolved on the exchange since the last tick."""
        position = await self.position()
        if not position.is_active():
            return None
        if position.exit_pending:
            return await self.reconcile_pending_exit(position)
        if position.is_oco():
            return await self.check_bracket(position)
        return None

    async def check_bracket(self, position: Position) -> Optional[ExecutionResult]:
        """Close the position if its bracket filled; returns None while it is still working."""
        status = await self.gateway.fetch_bracket_order(position.oco_order_list_id, self.symbol)
        if status.was_filled:
            logger.info(
                f"Bracket filled | symbol={self.symbol} list_id={status.list_id} "
                f"order_id={status.filled_order_id} price={status.fill_price}"
            )
            return await self.executor.record_exit(
                self.symbol,
                status.fill_price,
                status.filled_quantity,
                f"{status.list_id}:{status.filled_order_id}",
                position,
                full=True,
            )
        if status.is_done or status.list_order_status == "REJECT":
            logger.warning(
                f"Bracket ended without a fill, switching to indicator exits | symbol={self.symbol} "
                f"list_id={status.list_id} status={status.list_order_status}"
            )
            await asyncio.to_thread(self.store.detach_bracket, self.symbol)
            return ExecutionResult(Outcome.CANCELED, self.symbol, order_id=status.list_id, message="bracket ended unfilled")
        return None

    async def reconcile_pending_exit(self, position: Position) -> Optional[ExecutionResult]:
        order_id = position.exit_order_id
        status = await self.gateway.fetch_order(order_id, self.symbol)
        if status.state is OrderState.OPEN:
            logger.info(f"Emergency sell still open | symbol={self.symbol} order_id={order_id} filled={status.filled}")
            return None

        result = None
        if status.filled > 0:
            result = await self.executor.record_exit(
                self.symbol, status.average or position.buy_price, status.filled, order_id, position,
                full=status.state is OrderState.CLOSED,
            )
        if status.state is not OrderState.CLOSED:
            logger.warning(f"Emergency sell ended {status.state.value} | symbol={self.symbol} order_id={order_id}")
            if (await self.position()).is_active():
                await asyncio.to_thread(self.store.set_exit_order, self.symbol, None)
            if result is None:
                result = ExecutionResult(Outcome.CANCELED, self.symbol, order_id=order_id, message=status.state.value)
        return result

    # --- restart ---
    async def startup_reconcile(self) -> None:
        """Bring store and exchange back in line after a restart.

        The position row wins over the status row. Open positions are
        cross-checked against the exchange: the entry order must have
        filled, and brackets or pending sells that resolved while the bot
        was down are recorded.
        """
        repaired = await asyncio.to_thread(self.store.repair_status, self.symbol)
        if repaired is not None:
            logger.critical(f"Status disagreed with stored position, repaired | symbol={self.symbol} status={repaired.value}")

        position = await self.position()
        if not position.is_active():
            logger.info(f"Startup state | symbol={self.symbol} state=IDLE")
            return

        logger.info(f"Startup state | symbol={self.symbol} state=IN_POSITION {position}")
        if position.buy_order_id:
            try:
                entry = await self.gateway.fetch_order(position.buy_order_id, self.symbol)
                if entry.filled <= 0:
                    logger.critical(
                        f"Stored position has no filled entry order on the exchange | symbol={self.symbol} "
                        f"order_id={position.buy_order_id} state={entry.state.value}"
                    )
                elif entry.filled != position.quantity:
                    logger.warning(
                        f"Entry fill differs from stored quantity | symbol={self.symbol} "
                        f"exchange={entry.filled} stored={position.quantity}"
                    )
            except TradingError as e:
                logger.warning(f"Could not verify entry order | symbol={self.symbol} order_id={position.buy_order_id} error={e}")

        try:
            result = await self.reconcile()
        except TradingError as e:
            if e.kind.fatal:
                raise
            logger.warning(f"Startup reconciliation deferred to first tick | symbol={self.symbol} error={e}")
            return
        if result is not None:
            logger.info(f"Startup reconciliation | symbol={self.symbol} outcome={result.outcome.value}")
