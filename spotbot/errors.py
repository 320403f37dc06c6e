"""Error taxonomy and execution results.

Every failure the bot can hit while trading is tagged with an ``ErrorKind``.
Exchange-side and order-level problems are returned to callers inside an
``ExecutionResult`` so the scheduler can tell retryable conditions from
fatal ones without unwinding the stack. Persistence failures are raised,
because once an order has filled a failed commit means the exchange and
the store disagree and the cycle must stop.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    EXCHANGE_UNAVAILABLE = "exchange_unavailable"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ORDER_REJECTED = "order_rejected"
    ORDER_TIMED_OUT = "order_timed_out"
    PERSISTENCE_WRITE_FAILURE = "persistence_write_failure"
    CONFIGURATION_INVALID = "configuration_invalid"

    @property
    def retryable(self) -> bool:
        """Retried at the next poll or tick, never within the same call."""
        return self is ErrorKind.EXCHANGE_UNAVAILABLE

    @property
    def fatal(self) -> bool:
        return self in (ErrorKind.PERSISTENCE_WRITE_FAILURE, ErrorKind.CONFIGURATION_INVALID)


class TradingError(Exception):
    """Base class for all bot errors."""

    kind: ErrorKind = ErrorKind.EXCHANGE_UNAVAILABLE

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class ExchangeUnavailable(TradingError):
    """Network or API failure talking to the exchange."""

    kind = ErrorKind.EXCHANGE_UNAVAILABLE

    def __init__(self, message: str, symbol: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, symbol)
        self.status = status


class InsufficientFunds(TradingError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class OrderRejected(TradingError):
    """Order refused locally (below exchange minimums) or by the exchange."""

    kind = ErrorKind.ORDER_REJECTED


class OrderTimedOut(TradingError):
    kind = ErrorKind.ORDER_TIMED_OUT


class PersistenceWriteFailure(TradingError):
    """A store write failed; exchange and store may now be inconsistent."""

    kind = ErrorKind.PERSISTENCE_WRITE_FAILURE


class PositionConflict(PersistenceWriteFailure):
    """commit_entry on an active position, or commit_exit on an idle one."""


class ConfigurationInvalid(TradingError):
    kind = ErrorKind.CONFIGURATION_INVALID


class Outcome(Enum):
    FILLED = "filled"      # order filled and state committed
    PLACED = "placed"      # order placed, resolution observed later
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"
    SKIPPED = "skipped"    # nothing sent to the exchange
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one execution protocol sequence."""

    outcome: Outcome
    symbol: str
    error_kind: Optional[ErrorKind] = None
    order_id: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.FILLED, Outcome.PLACED)

    @property
    def retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.retryable

    @classmethod
    def failure(cls, symbol: str, error: TradingError) -> "ExecutionResult":
        outcome = Outcome.TIMED_OUT if error.kind is ErrorKind.ORDER_TIMED_OUT else Outcome.FAILED
        if error.kind is ErrorKind.INSUFFICIENT_FUNDS:
            outcome = Outcome.SKIPPED
        return cls(outcome=outcome, symbol=symbol, error_kind=error.kind, message=str(error))
