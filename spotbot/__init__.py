"""
Multi-symbol spot trading bot.

Polls candles and tickers for a set of spot pairs, derives RSI + Bollinger
band signals, and manages one position per pair:
- Limit buy entries sized from a fixed quote notional
- Exits via exchange-side OCO brackets, a secure-profit trailing stop,
  an emergency stop-loss or the indicator sell signal
- A global cap on concurrent positions, filled lowest-RSI first
- Atomic SQLite persistence (position + trade ledger + status) with
  restart reconciliation
- Structured logging via loguru, YAML configuration validated by pydantic

Core Modules:
    position: Position, bot status and order type
    trade: Trade ledger entries and statistics
    indicators: Signal generator (RSI, Bollinger bands)
    exchange: Exchange gateway interface and in-memory gateway
    binance_adapter: Async Binance REST gateway
    persistence_sqlite: Atomic SQLite store
    execution: Order execution protocol (buy, sell, bracket, emergency)
    exit_strategy: Exit strategy evaluator
    state_machine: Per-symbol position state machine
    scheduler: Multi-symbol scheduler
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from spotbot.config import BotConfig
    >>> from spotbot.bot import build_scheduler
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> scheduler, store, gateway = build_scheduler(config)
"""

__version__ = "0.1.0"
__all__ = [
    "position",
    "trade",
    "errors",
    "indicators",
    "exchange",
    "binance_adapter",
    "persistence_sqlite",
    "db_migrations",
    "execution",
    "exit_strategy",
    "state_machine",
    "scheduler",
    "pnl",
    "config",
    "secrets",
]
