from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from orchestration.errors import ConfigurationError
from orchestration.records import Position
from strategy.base import TradingStrategy
from strategy.signal import Action, MarketData, PositionSide, Signal


@dataclass
class GridLevel:
    price: float
    quantity: float = 0.0
    active: bool = False


class GridStrategy(TradingStrategy):
    """Fixed price grid laid out around the first observed price of each symbol.

    Levels are spaced ``grid_size`` apart with the base price at index
    ``num_grids // 2`` and are never re-centered. A level becomes active once
    a buy at that level fills and is released when the position closes.
    """

    name = "Grid Strategy"
    default_min_confidence = 0.8

    def __init__(self):
        super().__init__()
        self.grid_size = 0.01
        self.num_grids = 10
        self.order_notional = 100.0
        self.base_prices: Dict[str, float] = {}
        self.levels: Dict[str, List[GridLevel]] = {}
        self._pending_level: Dict[str, int] = {}
        self._held_level: Dict[str, int] = {}

    def _configure(self, params: Dict[str, Any]) -> None:
        grid_size = self._param(params, 'grid_size', self.grid_size, float)
        num_grids = self._param(params, 'num_grids', self.num_grids, int)
        order_notional = self._param(params, 'order_notional', self.order_notional, float)
        if not 0 < grid_size < 0.5:
            raise ConfigurationError("grid_size must be between 0 and 0.5")
        if num_grids < 2:
            raise ConfigurationError("num_grids must be at least 2")
        if order_notional <= 0:
            raise ConfigurationError("order_notional must be positive")
        self.grid_size = grid_size
        self.num_grids = num_grids
        self.order_notional = order_notional

    def initialize_grid(self, symbol: str, base_price: float) -> List[GridLevel]:
        center = self.num_grids // 2
        levels = []
        for i in range(self.num_grids):
            offset = (i - center) * self.grid_size
            levels.append(GridLevel(price=base_price + base_price * offset))
        self.base_prices[symbol] = base_price
        self.levels[symbol] = levels
        return levels

    def find_grid_level(self, symbol: str, price: float) -> int:
        base_price = self.base_prices.get(symbol)
        if not base_price:
            return -1
        offset = (price - base_price) / base_price / self.grid_size
        # int() truncates toward zero
        return int(offset) + self.num_grids // 2

    def _evaluate_buy(self, symbol: str, data: MarketData) -> Signal:
        if symbol not in self.base_prices:
            self.initialize_grid(symbol, data.price)

        levels = self.levels[symbol]
        index = self.find_grid_level(symbol, data.price)
        if index < 0 or index >= len(levels):
            return Signal.hold("Price outside grid range")

        level = levels[index]
        if data.price <= level.price and not level.active:
            quantity = self.order_notional / data.price
            self._pending_level[symbol] = index
            return Signal(
                action=Action.BUY,
                quantity=quantity,
                price=data.price,
                confidence=self.min_confidence,
                reason=f"Grid buy at level {index}",
                position_side=PositionSide.LONG,
            )
        return Signal.hold("No grid buy signal")

    def _evaluate_sell(self, symbol: str, data: MarketData, position: Position) -> Signal:
        if symbol not in self.base_prices:
            return Signal.hold("Grid not initialized")

        profit_target = position.entry_price * (1 + self.grid_size)
        if data.price >= profit_target:
            return Signal(
                action=Action.SELL,
                quantity=position.size,
                price=data.price,
                confidence=self.min_confidence,
                reason=f"Grid sell target reached: {profit_target:.2f}",
            )

        stop_loss = position.entry_price * (1 - self.grid_size * 2)
        if data.price <= stop_loss:
            return Signal(
                action=Action.SELL,
                quantity=position.size,
                price=data.price,
                confidence=1.0,
                reason=f"Grid stop loss: {stop_loss:.2f}",
            )
        return Signal.hold("No grid sell signal")

    def on_order_filled(self, symbol: str, signal: Signal) -> None:
        index = self._pending_level.pop(symbol, None)
        if index is None or symbol not in self.levels:
            return
        level = self.levels[symbol][index]
        level.active = True
        level.quantity = signal.quantity
        self._held_level[symbol] = index

    def on_position_closed(self, symbol: str, position: Position) -> None:
        index = self._held_level.pop(symbol, None)
        if index is None or symbol not in self.levels:
            return
        level = self.levels[symbol][index]
        level.active = False
        level.quantity = 0.0

    def active_levels(self, symbol: str) -> List[int]:
        return [i for i, level in enumerate(self.levels.get(symbol, [])) if level.active]

    def level_price(self, symbol: str, index: int) -> Optional[float]:
        levels = self.levels.get(symbol)
        if not levels or not 0 <= index < len(levels):
            return None
        return levels[index].price
