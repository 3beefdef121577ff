import logging
from typing import Any, Callable, Dict, Optional

from orchestration.records import Position
from strategy.base import TradingStrategy
from strategy.signal import MarketData, Signal

logger = logging.getLogger(__name__)

# decider(symbol, data, position) -> Signal or None; position is None for buy evaluations.
Decider = Callable[[str, MarketData, Optional[Position]], Optional[Signal]]


class AIStrategy(TradingStrategy):
    """Passthrough strategy delegating every decision to an external decider.

    With no decider attached every evaluation is a HOLD, so selecting this
    strategy without wiring a model never trades.
    """

    name = "AIStrategy"
    default_min_confidence = 0.5

    def __init__(self, decider: Optional[Decider] = None):
        super().__init__()
        self.decider = decider
        self.parameters: Dict[str, Any] = {}

    def _configure(self, params: Dict[str, Any]) -> None:
        self.parameters = params

    def set_decider(self, decider: Optional[Decider]) -> None:
        self.decider = decider

    def _decide(self, symbol: str, data: MarketData, position: Optional[Position]) -> Signal:
        if self.decider is None:
            return Signal.hold("No decision model attached")
        signal = self.decider(symbol, data, position)
        if signal is None:
            return Signal.hold("Decision model returned no signal")
        return signal

    def _evaluate_buy(self, symbol: str, data: MarketData) -> Signal:
        return self._decide(symbol, data, None)

    def _evaluate_sell(self, symbol: str, data: MarketData, position: Position) -> Signal:
        return self._decide(symbol, data, position)
