"""
Multi-symbol scheduler.

One tick walks every configured symbol in insertion order:

1. reconcile exchange-side exits (filled brackets, pending emergency sells)
2. count active positions from the store; ``available = max - active``
3. analyze every symbol (candles + ticker + indicators), sequentially
4. run every open position through the exit strategy (never slot-limited)
5. dispatch up to ``available`` BUY candidates, lowest RSI first

A tick that fires while the previous one is still running is skipped, not
queued. Errors are isolated per symbol: they are logged, recorded in the
``TickReport`` and the tick moves on to the next symbol.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .errors import ErrorKind, ExecutionResult, PersistenceWriteFailure, TradingError
from .exchange import ExchangeGateway
from .execution import OrderExecutor
from .exit_strategy import ExitStrategyEvaluator
from .indicators import InsufficientData, Signal, SignalGenerator
from .logging_setup import logger
from .persistence_sqlite import SQLiteStore
from .position import now_ms
from .state_machine import ManageOutcome, MarketSnapshot, PositionStateMachine


@dataclass(frozen=True)
class SymbolFailure:
    symbol: str
    stage: str
    kind: Optional[ErrorKind]
    message: str


@dataclass
class TickReport:
    started_at: int = field(default_factory=now_ms)
    active_positions: int = 0
    available_slots: int = 0
    reconciled: Dict[str, ExecutionResult] = field(default_factory=dict)
    exits: Dict[str, ManageOutcome] = field(default_factory=dict)
    candidates: List[str] = field(default_factory=list)
    entries: Dict[str, ExecutionResult] = field(default_factory=dict)
    failures: List[SymbolFailure] = field(default_factory=list)

    @property
    def dispatched(self) -> List[str]:
        return list(self.entries)

    def failed(self, symbol: str) -> bool:
        return any(f.symbol == symbol for f in self.failures)


class MultiSymbolScheduler:
    """Drive all symbol state machines from a single periodic tick."""

    def __init__(
        self,
        store: SQLiteStore,
        max_concurrent_positions: int = 1,
        tick_interval: float = 10.0,
        machines: Optional[Iterable[PositionStateMachine]] = None,
    ):
        self.store = store
        self.max_concurrent_positions = max_concurrent_positions
        self.tick_interval = tick_interval
        self.contexts: Dict[str, PositionStateMachine] = {}
        for machine in machines or ():
            self.register(machine)
        self.skipped_ticks = 0
        self.completed_ticks = 0
        self._processing = False
        self._stop_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._fatal: Optional[BaseException] = None

    @classmethod
    def from_config(cls, config, gateway: ExchangeGateway, store: SQLiteStore, clock=None) -> "MultiSymbolScheduler":
        trading = config.trading
        executor = OrderExecutor(
            gateway, store, trading, poll_interval=config.scheduler.poll_interval_ms / 1000, clock=clock
        )
        signals = SignalGenerator.from_config(config.indicators)
        evaluator = ExitStrategyEvaluator.from_config(trading)
        machines = [
            PositionStateMachine(
                symbol, gateway, store, executor, signals, evaluator,
                timeframe=trading.timeframe, candle_limit=trading.candle_limit,
            )
            for symbol in trading.symbols
        ]
        return cls(
            store,
            max_concurrent_positions=trading.max_concurrent_positions,
            tick_interval=config.scheduler.tick_interval_ms / 1000,
            machines=machines,
        )

    def register(self, machine: PositionStateMachine) -> None:
        if machine.symbol in self.contexts:
            raise ValueError(f"Symbol already registered: {machine.symbol}")
        self.contexts[machine.symbol] = machine

    @property
    def processing(self) -> bool:
        return self._processing

    # --- per-symbol isolation ---
    async def _isolated(self, report: TickReport, symbol: str, stage: str, coro):
        try:
            return await coro
        except PersistenceWriteFailure as e:
            logger.critical(f"Persistence failure, symbol cycle aborted | symbol={symbol} stage={stage} error={e}")
            report.failures.append(SymbolFailure(symbol, stage, e.kind, str(e)))
        except TradingError as e:
            logger.error(f"Symbol step failed | symbol={symbol} stage={stage} kind={e.kind.value} error={e}")
            report.failures.append(SymbolFailure(symbol, stage, e.kind, str(e)))
        except InsufficientData as e:
            logger.warning(f"Not enough market data | symbol={symbol} stage={stage} error={e}")
            report.failures.append(SymbolFailure(symbol, stage, None, str(e)))
        except Exception as e:
            logger.exception(f"Unexpected error | symbol={symbol} stage={stage} error={e}")
            report.failures.append(SymbolFailure(symbol, stage, None, repr(e)))
        return None

    # --- tick ---
    async def tick(self) -> Optional[TickReport]:
        """Run one cycle; returns None when skipped because a tick is already running."""
        if self._processing:
            self.skipped_ticks += 1
            logger.warning(f"Previous tick still running, skipping | skipped_total={self.skipped_ticks}")
            return None
        self._processing = True
        try:
            report = await self._tick()
            self.completed_ticks += 1
            return report
        finally:
            self._processing = False

    async def _tick(self) -> TickReport:
        report = TickReport()

        for symbol, machine in self.contexts.items():
            result = await self._isolated(report, symbol, "reconcile", machine.reconcile())
            if result is not None:
                report.reconciled[symbol] = result

        report.active_positions = await asyncio.to_thread(self.store.count_active_positions, list(self.contexts))
        report.available_slots = max(0, self.max_concurrent_positions - report.active_positions)
        logger.info(
            f"Tick start | symbols={len(self.contexts)} active={report.active_positions} "
            f"slots={report.available_slots}/{self.max_concurrent_positions}"
        )

        snapshots: Dict[str, MarketSnapshot] = {}
        for symbol, machine in self.contexts.items():
            snapshot = await self._isolated(report, symbol, "analyze", machine.analyze())
            if snapshot is not None:
                snapshots[symbol] = snapshot

        for symbol, snapshot in snapshots.items():
            if not snapshot.position.is_active():
                continue
            outcome = await self._isolated(report, symbol, "exit", self.contexts[symbol].manage(snapshot))
            if outcome is not None:
                report.exits[symbol] = outcome

        candidates = sorted(
            (s for s in snapshots.values() if s.signal is Signal.BUY and s.can_enter),
            key=lambda s: s.rsi,
        )
        report.candidates = [s.symbol for s in candidates]
        if candidates:
            logger.info(
                "Buy candidates | "
                + " ".join(f"{s.symbol}(rsi={s.rsi:.2f})" for s in candidates)
                + f" slots={report.available_slots}"
            )
        for snapshot in candidates[: report.available_slots]:
            result = await self._isolated(report, snapshot.symbol, "entry", self.contexts[snapshot.symbol].enter())
            if result is not None:
                report.entries[snapshot.symbol] = result
        for snapshot in candidates[report.available_slots:]:
            logger.info(f"No slot available, buy signal ignored | symbol={snapshot.symbol} rsi={snapshot.rsi:.2f}")

        if report.failures:
            logger.warning(f"Tick finished with failures | symbols={[f.symbol for f in report.failures]}")
        return report

    # --- lifecycle ---
    async def startup_reconcile(self) -> None:
        for symbol, machine in self.contexts.items():
            await machine.startup_reconcile()
        await self.log_positions_summary()

    def _on_tick_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical(f"Tick crashed, stopping scheduler | error={exc!r}")
            self._fatal = exc
            self._stop_event.set()

    async def run(self, reconcile_first: bool = True) -> None:
        """Fire ``tick`` every ``tick_interval`` seconds until ``stop`` is called.

        Ticks run as tasks so a slow tick does not delay the timer; the
        reentrancy guard turns overlapping firings into skips. An error
        escaping a tick stops the loop and is re-raised here.
        """
        self._stop_event.clear()
        self._fatal = None
        if reconcile_first:
            await self.startup_reconcile()
        logger.info(f"Scheduler started | symbols={list(self.contexts)} interval={self.tick_interval}s")
        try:
            while not self._stop_event.is_set():
                task = asyncio.create_task(self.tick())
                self._tasks.add(task)
                task.add_done_callback(self._on_tick_done)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            logger.info(f"Scheduler stopped | ticks={self.completed_ticks} skipped={self.skipped_ticks}")
        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        self._stop_event.set()

    # --- reporting ---
    async def log_positions_summary(self) -> None:
        active = await asyncio.to_thread(self.store.active_symbols)
        logger.info(f"Positions | active={len(active)}/{self.max_concurrent_positions} symbols={active}")
        for symbol in active:
            if symbol in self.contexts:
                logger.info(f"  {await self.contexts[symbol].position()}")

    async def get_trading_stats(self) -> Dict[str, Any]:
        per_symbol = {}
        for symbol in self.contexts:
            per_symbol[symbol] = await asyncio.to_thread(self.store.get_trade_stats, symbol)
        overall = await asyncio.to_thread(self.store.get_trade_stats, None)
        return {
            "symbols": per_symbol,
            "total": overall,
            "active_positions": await asyncio.to_thread(self.store.count_active_positions, list(self.contexts)),
            "max_concurrent_positions": self.max_concurrent_positions,
            "completed_ticks": self.completed_ticks,
            "skipped_ticks": self.skipped_ticks,
        }
