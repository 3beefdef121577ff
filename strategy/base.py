from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional

from orchestration.errors import ConfigurationError
from orchestration.records import Position
from strategy.signal import Action, MarketData, Signal


# Fixed exits shared by the indicator strategies, in percent of entry.
FIXED_STOP_LOSS_PCT = -2.0
FIXED_TAKE_PROFIT_PCT = 5.0


class TradingStrategy(ABC):
    """Base class for the pluggable strategies.

    Subclasses implement ``_evaluate_buy`` / ``_evaluate_sell``; the public
    entry points clamp confidence into [0, 1] and force HOLD whenever the
    reported confidence is below ``min_confidence``.
    """

    name: str = "strategy"
    default_min_confidence: float = 0.5

    def __init__(self):
        self.min_confidence = self.default_min_confidence
        self.price_history: Dict[str, Deque[float]] = {}

    def initialize(self, parameters: Optional[Mapping[str, Any]] = None) -> None:
        params = dict(parameters or {})
        self.min_confidence = self._param(params, 'min_confidence', self.min_confidence, float)
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError("min_confidence must be between 0 and 1")
        self._configure(params)
        self._resize_history()

    def _configure(self, params: Dict[str, Any]) -> None:
        """Apply variant-specific parameters."""

    def history_cap(self) -> int:
        return 0

    def should_buy(self, symbol: str, data: MarketData) -> Signal:
        return self._gate(self._evaluate_buy(symbol, data))

    def should_sell(self, symbol: str, data: MarketData, position: Position) -> Signal:
        return self._gate(self._evaluate_sell(symbol, data, position))

    @abstractmethod
    def _evaluate_buy(self, symbol: str, data: MarketData) -> Signal:
        ...

    @abstractmethod
    def _evaluate_sell(self, symbol: str, data: MarketData, position: Position) -> Signal:
        ...

    def on_order_filled(self, symbol: str, signal: Signal) -> None:
        """Called by the engine after a BUY from this strategy filled."""

    def on_position_closed(self, symbol: str, position: Position) -> None:
        """Called by the engine after a position opened by this strategy closed."""

    def _gate(self, signal: Signal) -> Signal:
        signal.confidence = min(max(float(signal.confidence), 0.0), 1.0)
        if signal.action != Action.HOLD and signal.confidence < self.min_confidence:
            return Signal.hold(
                f"{signal.reason} (confidence {signal.confidence:.2f} below {self.min_confidence:.2f})",
                confidence=signal.confidence,
            )
        return signal

    def update_price_history(self, symbol: str, price: float) -> List[float]:
        cap = self.history_cap()
        history = self.price_history.get(symbol)
        if history is None:
            history = deque(maxlen=cap or None)
            self.price_history[symbol] = history
        history.append(float(price))
        return list(history)

    def _resize_history(self) -> None:
        cap = self.history_cap() or None
        for symbol, history in list(self.price_history.items()):
            self.price_history[symbol] = deque(history, maxlen=cap)

    @staticmethod
    def _param(params: Mapping[str, Any], key: str, default, cast):
        if key not in params or params[key] is None:
            return default
        value = params[key]
        if isinstance(value, bool):
            raise ConfigurationError(f"strategy parameter '{key}' must be numeric")
        try:
            return cast(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"strategy parameter '{key}' is invalid: {value!r}") from exc

    @staticmethod
    def pnl_percent(price: float, position: Position) -> Optional[float]:
        if not position.entry_price:
            return None
        return (price - position.entry_price) / position.entry_price * 100

    def fixed_exit(self, data: MarketData, position: Position) -> Optional[Signal]:
        """Stop-loss at -2% and take-profit at +5% of entry, independent of indicators."""
        pnl_pct = self.pnl_percent(data.price, position)
        if pnl_pct is None:
            return None
        if pnl_pct <= FIXED_STOP_LOSS_PCT:
            reason = f"Stop loss triggered: {pnl_pct:.2f}%"
        elif pnl_pct >= FIXED_TAKE_PROFIT_PCT:
            reason = f"Take profit triggered: {pnl_pct:.2f}%"
        else:
            return None
        return Signal(
            action=Action.SELL,
            quantity=position.size,
            price=data.price,
            confidence=1.0,
            reason=reason,
        )
