from typing import Any, Dict, Sequence

import numpy as np

from orchestration.errors import ConfigurationError
from orchestration.records import Position
from strategy.base import TradingStrategy
from strategy.signal import Action, MarketData, PositionSide, Signal


NEUTRAL_RSI = 50.0


class RSIStrategy(TradingStrategy):
    """Oversold/overbought RSI strategy.

    The RSI is recomputed from the whole retained window on every call: the
    last ``period`` gains and losses are averaged arithmetically, without
    Wilder smoothing, so values differ from the textbook indicator.
    """

    name = "RSI Strategy"
    default_min_confidence = 0.6
    history_buffer = 20

    def __init__(self):
        super().__init__()
        self.period = 14
        self.oversold = 30.0
        self.overbought = 70.0
        self.order_notional = 1000.0
        self.last_rsi: Dict[str, float] = {}

    def _configure(self, params: Dict[str, Any]) -> None:
        period = self._param(params, 'period', self.period, int)
        oversold = self._param(params, 'oversold', self.oversold, float)
        overbought = self._param(params, 'overbought', self.overbought, float)
        order_notional = self._param(params, 'order_notional', self.order_notional, float)
        if period <= 0:
            raise ConfigurationError("RSI period must be positive")
        if not 0 < oversold < overbought < 100:
            raise ConfigurationError("RSI thresholds must satisfy 0 < oversold < overbought < 100")
        if order_notional <= 0:
            raise ConfigurationError("order_notional must be positive")
        self.period = period
        self.oversold = oversold
        self.overbought = overbought
        self.order_notional = order_notional

    def history_cap(self) -> int:
        return self.period + self.history_buffer

    def calculate_rsi(self, prices: Sequence[float]) -> float:
        if len(prices) < self.period + 1:
            return NEUTRAL_RSI
        changes = np.diff(np.asarray(prices, dtype=float))
        gains = np.where(changes > 0, changes, 0.0)
        losses = np.where(changes > 0, 0.0, -changes)

        avg_gain = float(np.mean(gains[-self.period:]))
        avg_loss = float(np.mean(losses[-self.period:]))
        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        return 100.0 - (100.0 / (1.0 + rs))

    def _rsi(self, symbol: str, price: float):
        prices = self.update_price_history(symbol, price)
        rsi = self.calculate_rsi(prices)
        self.last_rsi[symbol] = rsi
        return prices, rsi

    def _evaluate_buy(self, symbol: str, data: MarketData) -> Signal:
        prices, rsi = self._rsi(symbol, data.price)
        if len(prices) < self.period + 1:
            return Signal.hold("Insufficient data for RSI")

        if rsi < self.oversold:
            confidence = (self.oversold - rsi) / self.oversold
            return Signal(
                action=Action.BUY,
                quantity=self.order_notional / data.price,
                price=data.price,
                confidence=confidence,
                reason=f"RSI oversold: {rsi:.2f}",
                position_side=PositionSide.LONG,
            )
        return Signal.hold(f"RSI: {rsi:.2f}")

    def _evaluate_sell(self, symbol: str, data: MarketData, position: Position) -> Signal:
        prices, rsi = self._rsi(symbol, data.price)
        if len(prices) < self.period + 1:
            return Signal.hold("Insufficient data for RSI")

        if rsi > self.overbought:
            confidence = (rsi - self.overbought) / (100 - self.overbought)
            if confidence >= self.min_confidence:
                return Signal(
                    action=Action.SELL,
                    quantity=position.size,
                    price=data.price,
                    confidence=confidence,
                    reason=f"RSI overbought: {rsi:.2f}",
                )

        exit_signal = self.fixed_exit(data, position)
        if exit_signal is not None:
            return exit_signal
        return Signal.hold(f"RSI: {rsi:.2f}")
