from typing import Any, Dict, Sequence, Tuple

import numpy as np

from orchestration.errors import ConfigurationError
from orchestration.records import Position
from strategy.base import FIXED_STOP_LOSS_PCT, FIXED_TAKE_PROFIT_PCT, TradingStrategy
from strategy.signal import Action, MarketData, PositionSide, Signal


class SMAStrategy(TradingStrategy):
    """Short/long simple moving average crossover."""

    name = "Simple Moving Average"
    default_min_confidence = 0.7
    history_buffer = 10

    def __init__(self):
        super().__init__()
        self.short_period = 10
        self.long_period = 20
        self.order_notional = 1000.0

    def _configure(self, params: Dict[str, Any]) -> None:
        short_period = self._param(params, 'short_period', self.short_period, int)
        long_period = self._param(params, 'long_period', self.long_period, int)
        if short_period <= 0 or long_period <= 0:
            raise ConfigurationError("SMA periods must be positive")
        if short_period >= long_period:
            raise ConfigurationError("short period must be less than long period")
        order_notional = self._param(params, 'order_notional', self.order_notional, float)
        if order_notional <= 0:
            raise ConfigurationError("order_notional must be positive")
        self.short_period = short_period
        self.long_period = long_period
        self.order_notional = order_notional

    def history_cap(self) -> int:
        return self.long_period + self.history_buffer

    @staticmethod
    def calculate_sma(prices: Sequence[float], period: int) -> float:
        if len(prices) < period:
            return 0.0
        return float(np.mean(np.asarray(prices[-period:], dtype=float)))

    def _means(self, prices: Sequence[float]) -> Tuple[float, float]:
        return (
            self.calculate_sma(prices, self.short_period),
            self.calculate_sma(prices, self.long_period),
        )

    def _evaluate_buy(self, symbol: str, data: MarketData) -> Signal:
        prices = self.update_price_history(symbol, data.price)
        if len(prices) < self.long_period:
            return Signal.hold(f"Insufficient data: {len(prices)}/{self.long_period} samples")

        short_sma, long_sma = self._means(prices)
        if short_sma > long_sma and long_sma > 0:
            crossover_strength = (short_sma - long_sma) / long_sma
            confidence = min(crossover_strength * 10, 1.0)
            return Signal(
                action=Action.BUY,
                quantity=self.order_notional / data.price,
                price=data.price,
                stop_loss=data.price * (1 + FIXED_STOP_LOSS_PCT / 100),
                take_profit=data.price * (1 + FIXED_TAKE_PROFIT_PCT / 100),
                confidence=confidence,
                reason=f"SMA crossover: short={short_sma:.2f}, long={long_sma:.2f}",
                position_side=PositionSide.LONG,
            )
        return Signal.hold(f"No buy signal: short={short_sma:.2f}, long={long_sma:.2f}")

    def _evaluate_sell(self, symbol: str, data: MarketData, position: Position) -> Signal:
        prices = self.update_price_history(symbol, data.price)
        if len(prices) < self.long_period:
            return Signal.hold(f"Insufficient data: {len(prices)}/{self.long_period} samples")

        short_sma, long_sma = self._means(prices)
        if short_sma < long_sma and long_sma > 0:
            crossover_strength = (long_sma - short_sma) / long_sma
            confidence = min(crossover_strength * 10, 1.0)
            if confidence >= self.min_confidence:
                return Signal(
                    action=Action.SELL,
                    quantity=position.size,
                    price=data.price,
                    confidence=confidence,
                    reason=f"SMA crossover: short={short_sma:.2f}, long={long_sma:.2f}",
                )

        exit_signal = self.fixed_exit(data, position)
        if exit_signal is not None:
            return exit_signal
        return Signal.hold(f"No sell signal: short={short_sma:.2f}, long={long_sma:.2f}")
