"""Command-line entry point.

Usage:

    spotbot --config config.yaml
    python -m spotbot --config config.yaml --once
"""
import argparse
import asyncio
import signal
import sys
from typing import Optional, Tuple

from .binance_adapter import BinanceAdapter
from .config import BotConfig
from .errors import ConfigurationInvalid
from .exchange import ExchangeGateway
from .logging_setup import logger, setup_logging
from .persistence_sqlite import SQLiteStore
from .scheduler import MultiSymbolScheduler
from .secrets import load_credentials


def build_scheduler(
    config: BotConfig, gateway: Optional[ExchangeGateway] = None
) -> Tuple[MultiSymbolScheduler, SQLiteStore, ExchangeGateway]:
    """Wire gateway, store and scheduler from configuration."""
    if gateway is None:
        credentials = load_credentials()
        gateway = BinanceAdapter.from_config(config.exchange, config.rate_limit, credentials)
    store = SQLiteStore(config.persistence.db_path)
    scheduler = MultiSymbolScheduler.from_config(config, gateway, store)
    return scheduler, store, gateway


def _install_signal_handlers(scheduler: MultiSymbolScheduler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            pass  # Windows event loops


async def run_bot(config: BotConfig, once: bool = False, gateway: Optional[ExchangeGateway] = None) -> None:
    scheduler, store, gateway = build_scheduler(config, gateway)
    try:
        if isinstance(gateway, BinanceAdapter):
            await gateway.open()
        await gateway.load_markets(list(config.trading.symbols))
        if once:
            await scheduler.startup_reconcile()
            await scheduler.tick()
        else:
            _install_signal_handlers(scheduler)
            await scheduler.run()
        stats = await scheduler.get_trading_stats()
        total = stats["total"]
        logger.info(
            f"Session stats | trades={total.total_trades} buys={total.buy_trades} "
            f"sells={total.sell_trades} realized_pnl={total.total_pnl:.4f}"
        )
    finally:
        await gateway.close()
        store.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Multi-symbol spot trading bot")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config file")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args(argv)

    try:
        config = BotConfig.from_yaml(args.config)
    except ConfigurationInvalid as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(
        config.persistence.log_file, config.persistence.log_level, trade_log_file=config.persistence.trade_log_file
    )
    logger.info(f"Starting bot | symbols={config.trading.symbols} testnet={config.exchange.testnet}")

    try:
        asyncio.run(run_bot(config, once=args.once))
    except ConfigurationInvalid as e:
        logger.critical(f"Configuration error: {e}")
        return 2
    except Exception as e:
        logger.exception(f"Bot terminated by unhandled error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
