"""Exit strategy evaluator.

Decides, for an open position and the current price, which exit path
applies this tick. The checks run in a fixed order and the first match
wins:

1. Emergency stop-loss: P&L% <= -emergency_stop_loss_percent, any order type.
2. OCO passive monitoring: bracket-managed positions only poll their
   bracket; steps 3 and 4 never run for them.
3. Secure-profit trailing stop (indicator-managed only): once the gain at
   the high-water mark has reached the trigger, a retreat from that mark
   of at least the drop percentage sells.
4. Indicator sell signal (indicator-managed only).

The evaluator is pure: it reports the new high-water mark but leaves
persisting it to the caller.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from .position import HUNDRED, Position


class ExitAction(Enum):
    HOLD = "hold"
    EMERGENCY_EXIT = "emergency_exit"
    CHECK_BRACKET = "check_bracket"
    TRAILING_STOP = "trailing_stop"
    SIGNAL_EXIT = "signal_exit"


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    reason: str
    pnl_percent: Decimal
    drawdown_percent: Decimal
    highest_price: Decimal

    @property
    def sells(self) -> bool:
        return self.action in (ExitAction.TRAILING_STOP, ExitAction.SIGNAL_EXIT)


class ExitStrategyEvaluator:
    def __init__(
        self,
        emergency_stop_loss_percent: Decimal = Decimal("5.0"),
        secure_profit_trigger_percent: Decimal = Decimal("1.5"),
        secure_profit_drop_percent: Decimal = Decimal("0.5"),
    ):
        self.emergency_stop_loss_percent = Decimal(str(emergency_stop_loss_percent))
        self.secure_profit_trigger_percent = Decimal(str(secure_profit_trigger_percent))
        self.secure_profit_drop_percent = Decimal(str(secure_profit_drop_percent))

    @classmethod
    def from_config(cls, cfg) -> "ExitStrategyEvaluator":
        return cls(
            emergency_stop_loss_percent=cfg.emergency_stop_loss_percent,
            secure_profit_trigger_percent=cfg.secure_profit_trigger_percent,
            secure_profit_drop_percent=cfg.secure_profit_drop_percent,
        )

    def evaluate(self, position: Position, price: Decimal, sell_signal: bool = False) -> ExitDecision:
        if not position.is_active():
            raise ValueError("Exit evaluation needs an active position")

        pnl = position.unrealized_pnl_percent(price)
        highest = max(position.highest_price or position.buy_price, price)
        drawdown = (highest - price) / highest * HUNDRED if highest > 0 else Decimal("0")

        def decide(action: ExitAction, reason: str) -> ExitDecision:
            return ExitDecision(action, reason, pnl, drawdown, highest)

        if pnl <= -self.emergency_stop_loss_percent:
            return decide(
                ExitAction.EMERGENCY_EXIT,
                f"P&L {pnl:.2f}% <= -{self.emergency_stop_loss_percent}%",
            )

        if position.is_oco():
            return decide(ExitAction.CHECK_BRACKET, "bracket order manages the exit")

        peak_gain = (highest - position.buy_price) / position.buy_price * HUNDRED
        if peak_gain >= self.secure_profit_trigger_percent and drawdown >= self.secure_profit_drop_percent:
            return decide(
                ExitAction.TRAILING_STOP,
                f"peak gain {peak_gain:.2f}% >= {self.secure_profit_trigger_percent}% "
                f"and drop from high {drawdown:.3f}% >= {self.secure_profit_drop_percent}%",
            )

        if sell_signal:
            return decide(ExitAction.SIGNAL_EXIT, "indicator sell signal")

        return decide(ExitAction.HOLD, "waiting for an exit condition")
