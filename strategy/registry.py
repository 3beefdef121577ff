import logging
from typing import Callable, Dict, Optional

from config.settings import StrategySettings
from strategy.ai_stub import AIStrategy
from strategy.base import TradingStrategy
from strategy.grid import GridStrategy
from strategy.rsi import RSIStrategy
from strategy.sma import SMAStrategy

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "simple_moving_average"

STRATEGIES: Dict[str, Callable[[], TradingStrategy]] = {
    "simple_moving_average": SMAStrategy,
    "rsi": RSIStrategy,
    "grid": GridStrategy,
    "ai": AIStrategy,
}


def create_strategy(settings: Optional[StrategySettings] = None) -> TradingStrategy:
    """Build and initialize the configured strategy.

    Unknown type strings fall back to the simple moving average strategy.
    Invalid parameters raise ConfigurationError.
    """
    strategy_type = (settings.type if settings else DEFAULT_STRATEGY) or DEFAULT_STRATEGY
    factory = STRATEGIES.get(strategy_type.lower())
    if factory is None:
        logger.warning("Unknown strategy type '%s', falling back to %s", strategy_type, DEFAULT_STRATEGY)
        factory = STRATEGIES[DEFAULT_STRATEGY]

    strategy = factory()
    strategy.initialize(settings.parameters if settings else None)
    logger.info("Strategy initialized: %s", strategy.name)
    return strategy
