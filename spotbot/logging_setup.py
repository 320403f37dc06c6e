"""Structured logging setup using loguru.

Modules log through the shared ``logger``. Filled trades are additionally
logged through ``trade_logger``; when a trade log file is configured those
records also go to a dedicated sink, one line per fill.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
TRADE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {message}"


def _is_trade(record) -> bool:
    return record["extra"].get("ledger", False)


def setup_logging(
    log_file: Optional[str] = "spotbot.log",
    level: str = "INFO",
    enable_console: bool = True,
    trade_log_file: Optional[str] = None,
) -> None:
    """Configure logging sinks for the bot.

    Args:
        log_file: Path to the rotating log file, or None to skip file logging
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stdout as well
        trade_log_file: Optional path of the fills-only log
    """
    _logger.remove()

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            format=LOG_FORMAT,
            level=level,
            rotation="100 MB",
            retention="7 days",
            enqueue=True,
        )

    if trade_log_file:
        trade_path = Path(trade_log_file)
        trade_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(trade_path),
            format=TRADE_FORMAT,
            level="INFO",
            filter=_is_trade,
            rotation="10 MB",
            retention=10,
            enqueue=True,
        )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=LOG_FORMAT,
            level=level,
            colorize=True,
        )


logger = _logger
trade_logger = _logger.bind(ledger=True)
