from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from strategy.execution_types import Kline


class Action(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"


@dataclass
class Signal:
    """A strategy's recommendation for one symbol on one evaluation."""

    action: Action = Action.HOLD
    quantity: float = 0.0
    price: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    confidence: float = 0.0
    reason: str = ""
    position_side: PositionSide = PositionSide.BOTH

    @classmethod
    def hold(cls, reason: str, confidence: float = 0.0) -> 'Signal':
        return cls(action=Action.HOLD, reason=reason, confidence=confidence)

    @property
    def is_actionable(self) -> bool:
        return self.action != Action.HOLD

    @property
    def notional(self) -> float:
        return self.quantity * self.price


@dataclass
class MarketData:
    """Per-evaluation view handed to a strategy."""

    symbol: str
    price: float
    volume: float = 0.0
    change: float = 0.0
    timestamp: float = 0.0
    klines: List[Kline] = field(default_factory=list)
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
