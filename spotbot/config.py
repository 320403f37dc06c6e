"""Configuration loader for the trading bot.

YAML file with ``${VAR}`` environment interpolation, validated once at
startup into immutable pydantic models. Every option has an explicit
default and range; any violation is reported as ``ConfigurationInvalid``
listing all failing fields.

Example YAML:
    trading:
      symbols: ["BTC/USDC", "ETH/USDC"]
      timeframe: 5m
      notional_amount_per_trade: 50
      max_concurrent_positions: 2
      use_oco_orders: true
    indicators:
      rsi_oversold: 30
      rsi_overbought: 70
    scheduler:
      tick_interval_ms: 10000
    persistence:
      db_path: "${STATE_DIR}/spotbot.db"
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any, List, Optional, Union

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from .binance_adapter import MAINNET_URL, TESTNET_URL
from .errors import ConfigurationInvalid


def _to_decimal(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, int) and not isinstance(value, bool):
        return Decimal(value)
    return value


Dec = Annotated[Decimal, BeforeValidator(_to_decimal)]

SYMBOL_RE = re.compile(r"^[A-Z0-9]+/[A-Z0-9]+$")
TIMEFRAMES = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M")
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ExchangeConfig(_Section):
    """Binance connection settings."""
    base_url: str = MAINNET_URL
    testnet: bool = False
    timeout_seconds: int = Field(10, ge=1, le=120)
    max_retries: int = Field(5, ge=0, le=20)
    max_backoff_seconds: float = Field(60.0, gt=0, le=600)
    recv_window_ms: int = Field(5000, ge=100, le=60000)

    @property
    def effective_base_url(self) -> str:
        return TESTNET_URL if self.testnet else self.base_url


class TradingConfig(_Section):
    """Symbols, order sizing and exit parameters (percentages are in percent)."""
    symbols: List[str] = Field(default_factory=lambda: ["BTC/USDC"], min_length=1)
    timeframe: str = "5m"
    candle_limit: int = Field(100, ge=2, le=1000)
    notional_amount_per_trade: Dec = Field(Decimal("50"), gt=0)
    order_fill_timeout_ms: int = Field(30000, ge=1000, le=600000)
    max_concurrent_positions: int = Field(1, ge=1, le=100)
    use_oco_orders: bool = False
    oco_take_profit_percent: Dec = Field(Decimal("3.0"), gt=0, le=100)
    oco_stop_loss_percent: Dec = Field(Decimal("2.0"), gt=0, lt=100)
    oco_stop_limit_offset_percent: Dec = Field(Decimal("0.5"), ge=0, lt=100)
    emergency_stop_loss_percent: Dec = Field(Decimal("5.0"), gt=0, lt=100)
    secure_profit_trigger_percent: Dec = Field(Decimal("1.5"), gt=0, le=100)
    secure_profit_drop_percent: Dec = Field(Decimal("0.5"), gt=0, lt=100)
    buy_price_margin_percent: Dec = Field(Decimal("0.05"), ge=0, le=10)
    sell_price_margin_percent: Dec = Field(Decimal("0.05"), ge=0, le=10)
    emergency_price_margin_percent: Dec = Field(Decimal("1.0"), ge=0, le=20)

    @field_validator("symbols")
    @classmethod
    def _check_symbols(cls, v: List[str]) -> List[str]:
        bad = [s for s in v if not SYMBOL_RE.match(s)]
        if bad:
            raise ValueError(f"symbols must look like BASE/QUOTE in upper case: {bad}")
        if len(set(v)) != len(v):
            raise ValueError("symbols must be unique")
        return v

    @field_validator("timeframe")
    @classmethod
    def _check_timeframe(cls, v: str) -> str:
        if v not in TIMEFRAMES:
            raise ValueError(f"timeframe must be one of {', '.join(TIMEFRAMES)}")
        return v


class IndicatorConfig(_Section):
    rsi_period: int = Field(14, ge=2, le=100)
    bb_period: int = Field(20, ge=2, le=100)
    bb_std_dev: Dec = Field(Decimal("2"), gt=0, le=5)
    rsi_oversold: Dec = Field(Decimal("30"), ge=0, le=100)
    rsi_overbought: Dec = Field(Decimal("70"), ge=0, le=100)

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.rsi_oversold >= self.rsi_overbought:
            raise ValueError("rsi_oversold must be lower than rsi_overbought")
        return self


class SchedulerConfig(_Section):
    tick_interval_ms: int = Field(10000, ge=1000)
    poll_interval_ms: int = Field(1000, ge=100, le=60000)


class RateLimitConfig(_Section):
    """Client-side request quotas (per second)."""
    orders_per_second: int = Field(10, ge=1)
    default_per_second: int = Field(20, ge=1)


class PersistenceConfig(_Section):
    db_path: str = "data/spotbot.db"
    log_file: str = "logs/spotbot.log"
    trade_log_file: Optional[str] = "logs/trades.log"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, v: str) -> str:
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return v


class BotConfig(_Section):
    """Complete bot configuration."""
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    indicators: IndicatorConfig = Field(default_factory=IndicatorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)

    @model_validator(mode="after")
    def _check_candle_window(self):
        needed = max(self.indicators.rsi_period + 1, self.indicators.bb_period)
        if self.trading.candle_limit < needed:
            raise ValueError(f"trading.candle_limit must be at least {needed} for the configured indicator periods")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "BotConfig":
        try:
            return cls.model_validate(data or {})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors()
            )
            raise ConfigurationInvalid(f"Invalid configuration: {problems}") from exc

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "BotConfig":
        """Load configuration from a YAML file with ``${VAR}`` interpolation.

        Raises:
            ConfigurationInvalid: missing file, bad YAML or failed validation
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationInvalid(f"Config file not found: {config_path}")

        raw = config_file.read_text()
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigurationInvalid(f"Config file is not valid YAML: {exc}") from exc
        if data is not None and not isinstance(data, dict):
            raise ConfigurationInvalid("Config file must contain a mapping at the top level")
        return cls.from_dict(data or {})

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """Save configuration to a YAML file (decimals written as strings)."""
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        with output_file.open("w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
