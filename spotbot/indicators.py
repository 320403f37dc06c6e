"""Signal generator: RSI and Bollinger bands over candle closes.

The generator is stateless. ``compute_indicators`` reduces a window of
candles to the latest RSI (Wilder smoothing) and Bollinger bands (simple
moving average +/- k population standard deviations); ``classify`` turns
those values and the current price into buy/sell flags:

- buy:  price < lower band and RSI < oversold threshold
- sell: price > upper band and RSI > overbought threshold

``market_stats`` adds volatility, momentum, support/resistance and average
volume for the logs; none of them gate trading decisions.
"""
import statistics
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .logging_setup import logger
from .position import now_ms

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class OHLCV:
    """Open-High-Low-Close-Volume candle."""

    timestamp: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "OHLCV":
        """Build from an exchange kline row ``[ts, open, high, low, close, volume, ...]``."""
        if len(row) < 6:
            raise ValueError(f"Invalid OHLCV row: {row!r}")
        return cls(
            timestamp=int(row[0]),
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
        )


class Signal(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass(frozen=True)
class TechnicalIndicators:
    rsi: Optional[Decimal]
    bb_upper: Optional[Decimal]
    bb_middle: Optional[Decimal]
    bb_lower: Optional[Decimal]
    timestamp: int = 0

    def is_valid(self) -> bool:
        return None not in (self.rsi, self.bb_upper, self.bb_middle, self.bb_lower)

    def is_buy_signal(self, price: Decimal, oversold: Decimal) -> bool:
        return self.is_valid() and price < self.bb_lower and self.rsi < oversold

    def is_sell_signal(self, price: Decimal, overbought: Decimal) -> bool:
        return self.is_valid() and price > self.bb_upper and self.rsi > overbought

    def bandwidth_percent(self) -> Optional[Decimal]:
        """Band width relative to the middle band, in percent."""
        if not self.is_valid() or self.bb_middle == 0:
            return None
        return (self.bb_upper - self.bb_lower) / self.bb_middle * HUNDRED

    def band_position(self, price: Decimal) -> Optional[Decimal]:
        """0 at the lower band, 1 at the upper band."""
        if not self.is_valid() or self.bb_upper == self.bb_lower:
            return None
        return (price - self.bb_lower) / (self.bb_upper - self.bb_lower)

    def summary(self) -> str:
        if not self.is_valid():
            return "RSI=n/a BB=n/a"
        return (
            f"RSI={self.rsi:.2f} BB=[{self.bb_lower:.2f} | {self.bb_middle:.2f} | {self.bb_upper:.2f}]"
        )


@dataclass(frozen=True)
class SignalAnalysis:
    buy_signal: bool
    sell_signal: bool
    reason: str

    @property
    def signal(self) -> Signal:
        if self.buy_signal:
            return Signal.BUY
        if self.sell_signal:
            return Signal.SELL
        return Signal.HOLD


@dataclass(frozen=True)
class MarketStats:
    volatility: Decimal
    momentum_percent: Decimal
    support: Decimal
    resistance: Decimal
    average_volume: Decimal


class InsufficientData(ValueError):
    pass


def wilder_rsi(closes: Sequence[Decimal], period: int) -> Decimal:
    """Latest RSI value using Wilder's smoothing.

    Needs at least ``period + 1`` closes. Returns 100 when there were no
    losing candles in the window.
    """
    if len(closes) < period + 1:
        raise InsufficientData(f"RSI needs {period + 1} closes, got {len(closes)}")
    gains: List[Decimal] = []
    losses: List[Decimal] = []
    for prev, cur in zip(closes, closes[1:]):
        change = cur - prev
        gains.append(change if change > 0 else Decimal("0"))
        losses.append(-change if change < 0 else Decimal("0"))

    p = Decimal(period)
    avg_gain = sum(gains[:period], Decimal("0")) / p
    avg_loss = sum(losses[:period], Decimal("0")) / p
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (p - 1) + gain) / p
        avg_loss = (avg_loss * (p - 1) + loss) / p

    if avg_loss == 0:
        return HUNDRED
    rs = avg_gain / avg_loss
    return HUNDRED - HUNDRED / (1 + rs)


def bollinger_bands(closes: Sequence[Decimal], period: int, std_dev: Decimal):
    """Return (upper, middle, lower) for the last ``period`` closes."""
    if len(closes) < period:
        raise InsufficientData(f"Bollinger bands need {period} closes, got {len(closes)}")
    window = list(closes[-period:])
    middle = sum(window, Decimal("0")) / Decimal(period)
    sd = statistics.pstdev(window, middle)
    return middle + std_dev * sd, middle, middle - std_dev * sd


class SignalGenerator:
    """Compute indicators and classify them against the configured thresholds."""

    def __init__(
        self,
        rsi_period: int = 14,
        bb_period: int = 20,
        bb_std_dev: Decimal = Decimal("2"),
        rsi_oversold: Decimal = Decimal("30"),
        rsi_overbought: Decimal = Decimal("70"),
    ):
        self.rsi_period = rsi_period
        self.bb_period = bb_period
        self.bb_std_dev = Decimal(str(bb_std_dev))
        self.rsi_oversold = Decimal(str(rsi_oversold))
        self.rsi_overbought = Decimal(str(rsi_overbought))

    @classmethod
    def from_config(cls, cfg) -> "SignalGenerator":
        return cls(
            rsi_period=cfg.rsi_period,
            bb_period=cfg.bb_period,
            bb_std_dev=cfg.bb_std_dev,
            rsi_oversold=cfg.rsi_oversold,
            rsi_overbought=cfg.rsi_overbought,
        )

    @property
    def min_candles(self) -> int:
        return max(self.rsi_period + 1, self.bb_period)

    def compute_indicators(self, candles: Sequence[OHLCV]) -> TechnicalIndicators:
        """Reduce ``candles`` (oldest first) to the latest indicator values.

        Raises:
            InsufficientData: fewer candles than the longest indicator period
        """
        if not candles:
            raise InsufficientData("No candles")
        if len(candles) < self.min_candles:
            raise InsufficientData(f"Insufficient candles: {len(candles)} < {self.min_candles}")
        closes = [c.close for c in candles]
        rsi = wilder_rsi(closes, self.rsi_period)
        upper, middle, lower = bollinger_bands(closes, self.bb_period, self.bb_std_dev)
        return TechnicalIndicators(
            rsi=rsi, bb_upper=upper, bb_middle=middle, bb_lower=lower, timestamp=now_ms()
        )

    def classify(self, indicators: TechnicalIndicators, price: Decimal) -> SignalAnalysis:
        if indicators is None or not indicators.is_valid():
            return SignalAnalysis(False, False, "invalid indicators")

        buy = indicators.is_buy_signal(price, self.rsi_oversold)
        sell = indicators.is_sell_signal(price, self.rsi_overbought)
        if buy:
            reason = (
                f"price {price} < lower band {indicators.bb_lower:.2f} "
                f"and RSI {indicators.rsi:.2f} < {self.rsi_oversold}"
            )
        elif sell:
            reason = (
                f"price {price} > upper band {indicators.bb_upper:.2f} "
                f"and RSI {indicators.rsi:.2f} > {self.rsi_overbought}"
            )
        else:
            reason = "no signal"
        return SignalAnalysis(buy_signal=buy, sell_signal=sell, reason=reason)

    def market_stats(self, candles: Sequence[OHLCV], period: int = 20, momentum_period: int = 10) -> Optional[MarketStats]:
        """Informational statistics over the most recent ``period`` candles."""
        if len(candles) < max(period, momentum_period + 1):
            return None
        recent = list(candles[-period:])
        closes = [c.close for c in recent]
        last = candles[-1].close
        previous = candles[-1 - momentum_period].close
        momentum = (last - previous) / previous * HUNDRED if previous else Decimal("0")
        return MarketStats(
            volatility=statistics.pstdev(closes),
            momentum_percent=momentum,
            support=min(c.low for c in recent),
            resistance=max(c.high for c in recent),
            average_volume=sum((c.volume for c in recent), Decimal("0")) / Decimal(period),
        )

    def log_analysis(self, symbol: str, price: Decimal, indicators: TechnicalIndicators, analysis: SignalAnalysis) -> None:
        logger.info(f"Signal | symbol={symbol} price={price} {indicators.summary()} signal={analysis.signal.value}")
        if analysis.signal is not Signal.HOLD:
            logger.info(f"Signal reason | symbol={symbol} {analysis.reason}")

    def thresholds(self) -> Dict[str, Any]:
        return {
            "rsi_period": self.rsi_period,
            "bb_period": self.bb_period,
            "bb_std_dev": self.bb_std_dev,
            "rsi_oversold": self.rsi_oversold,
            "rsi_overbought": self.rsi_overbought,
        }
