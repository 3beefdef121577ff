import sys
from datetime import datetime

sys.path.insert(0, '.')

import pytest

from config.settings import StrategySettings
from orchestration.errors import ConfigurationError
from orchestration.records import Position
from strategy.ai_stub import AIStrategy
from strategy.grid import GridStrategy
from strategy.registry import create_strategy
from strategy.rsi import RSIStrategy
from strategy.sma import SMAStrategy
from strategy.signal import Action, MarketData, Signal


SYMBOL = 'BTCUSDT'


def tick(price):
    return MarketData(symbol=SYMBOL, price=price)


def long_position(entry, size=1.0):
    return Position(symbol=SYMBOL, position_side='LONG', size=size, entry_price=entry,
                    open_time=datetime(2024, 1, 1))


def test_sma_ascending_series_buys_at_twentieth_sample():
    sma = SMAStrategy()
    sma.initialize({'short_period': 10, 'long_period': 20, 'min_confidence': 0.7})

    signals = [sma.should_buy(SYMBOL, tick(10.0 * (i + 1))) for i in range(25)]

    assert all(s.action == Action.HOLD for s in signals[:19])
    assert 'Insufficient data' in signals[0].reason
    first = signals[19]
    assert first.action == Action.BUY
    assert first.confidence == pytest.approx(1.0)
    assert first.quantity == pytest.approx(1000.0 / 200.0)


def test_sma_weak_crossover_is_gated_by_min_confidence():
    prices = [100 + 0.1 * i for i in range(20)]
    short_mean = sum(prices[-10:]) / 10
    long_mean = sum(prices) / 20
    expected = min((short_mean - long_mean) / long_mean * 10, 1.0)

    strict = SMAStrategy()
    strict.initialize({'min_confidence': 0.7})
    for p in prices:
        signal = strict.should_buy(SYMBOL, tick(p))
    assert signal.action == Action.HOLD
    assert signal.confidence == pytest.approx(expected)
    assert 'below' in signal.reason

    loose = SMAStrategy()
    loose.initialize({'min_confidence': 0.01})
    for p in prices:
        signal = loose.should_buy(SYMBOL, tick(p))
    assert signal.action == Action.BUY
    assert signal.confidence == pytest.approx(expected)


def test_sma_rejects_short_period_not_below_long():
    with pytest.raises(ConfigurationError):
        SMAStrategy().initialize({'short_period': 20, 'long_period': 20})
    with pytest.raises(ConfigurationError):
        SMAStrategy().initialize({'min_confidence': 1.5})
    with pytest.raises(ConfigurationError):
        SMAStrategy().initialize({'short_period': 'fast'})


def test_sma_fixed_exits_on_sell():
    sma = SMAStrategy()
    sma.initialize({'short_period': 2, 'long_period': 3})
    position = long_position(100.0, size=2.0)
    for p in (100.0, 100.0, 100.0):
        sma.should_sell(SYMBOL, tick(p), position)

    stop = sma.should_sell(SYMBOL, tick(98.0), position)
    assert stop.action == Action.SELL
    assert stop.confidence == 1.0
    assert stop.quantity == 2.0
    assert 'Stop loss' in stop.reason

    take = sma.should_sell(SYMBOL, tick(105.0), position)
    assert take.action == Action.SELL
    assert 'Take profit' in take.reason


def test_sma_inverse_crossover_sells():
    prices = [100.0, 101.0, 102.0, 98.0]
    short_mean = sum(prices[-2:]) / 2
    long_mean = sum(prices) / 4
    expected = min((long_mean - short_mean) / long_mean * 10, 1.0)

    sma = SMAStrategy()
    sma.initialize({'short_period': 2, 'long_period': 4, 'min_confidence': 0.02})
    position = long_position(99.0, size=3.0)
    for p in prices:
        signal = sma.should_sell(SYMBOL, tick(p), position)

    assert signal.action == Action.SELL
    assert signal.confidence == pytest.approx(expected)
    assert signal.quantity == 3.0
    assert 'SMA crossover' in signal.reason


def test_sma_weak_inverse_crossover_falls_back_to_fixed_exits():
    prices = [100.0, 101.0, 102.0, 98.0]

    stopped = SMAStrategy()
    stopped.initialize({'short_period': 2, 'long_period': 4, 'min_confidence': 0.7})
    for p in prices:
        signal = stopped.should_sell(SYMBOL, tick(p), long_position(101.0))
    assert signal.action == Action.SELL
    assert signal.confidence == 1.0
    assert 'Stop loss' in signal.reason

    held = SMAStrategy()
    held.initialize({'short_period': 2, 'long_period': 4, 'min_confidence': 0.7})
    for p in prices:
        signal = held.should_sell(SYMBOL, tick(p), long_position(99.0))
    assert signal.action == Action.HOLD
    assert 'No sell signal' in signal.reason


def test_history_never_exceeds_cap():
    sma = SMAStrategy()
    sma.initialize({'short_period': 5, 'long_period': 8})
    for i in range(100):
        sma.should_buy(SYMBOL, tick(100.0 + i))
    history = list(sma.price_history[SYMBOL])
    assert len(history) == sma.history_cap() == 18
    assert history[0] == 182.0
    assert history[-1] == 199.0

    rsi = RSIStrategy()
    rsi.initialize({'period': 5})
    for i in range(100):
        rsi.should_buy(SYMBOL, tick(100.0 + i))
    assert len(rsi.price_history[SYMBOL]) == rsi.history_cap() == 25


def test_rsi_decreasing_series_buys_with_full_confidence():
    rsi = RSIStrategy()
    rsi.initialize({'period': 14, 'oversold': 30, 'overbought': 70})

    signals = [rsi.should_buy(SYMBOL, tick(100.0 - i)) for i in range(15)]

    assert all(s.action == Action.HOLD for s in signals[:14])
    assert rsi.last_rsi[SYMBOL] == 0.0
    assert signals[-1].action == Action.BUY
    assert signals[-1].confidence == pytest.approx(1.0)


def test_rsi_mild_oversold_is_gated_to_hold():
    # two gains of 1, eight losses of 1, four flat samples: RS = 1/4, RSI = 20
    prices = [100.0, 101.0, 102.0] + [101.0 - i for i in range(8)] + [94.0] * 4
    rsi = RSIStrategy()
    rsi.initialize({'period': 14, 'oversold': 30, 'overbought': 70})

    for p in prices:
        signal = rsi.should_buy(SYMBOL, tick(p))

    assert rsi.last_rsi[SYMBOL] == pytest.approx(20.0)
    assert signal.action == Action.HOLD
    assert signal.confidence == pytest.approx(1 / 3)
    assert 'below' in signal.reason

    loose = RSIStrategy()
    loose.initialize({'min_confidence': 0.3})
    for p in prices:
        signal = loose.should_buy(SYMBOL, tick(p))
    assert signal.action == Action.BUY


def test_rsi_boundaries():
    rsi = RSIStrategy()
    assert rsi.calculate_rsi([100.0] * 14) == 50.0
    assert rsi.calculate_rsi([100.0 + i for i in range(15)]) == 100.0

    early = rsi.should_buy(SYMBOL, tick(100.0))
    assert early.action == Action.HOLD
    assert rsi.last_rsi[SYMBOL] == 50.0


def test_rsi_overbought_sells():
    rsi = RSIStrategy()
    position = long_position(100.0)
    for i in range(15):
        signal = rsi.should_sell(SYMBOL, tick(100.0 + 0.1 * i), position)
    assert signal.action == Action.SELL
    assert signal.confidence == pytest.approx(1.0)
    assert 'overbought' in signal.reason


def test_grid_buys_at_inactive_level_below_base():
    grid = GridStrategy()
    grid.initialize({'grid_size': 0.01, 'num_grids': 10})

    grid.should_buy(SYMBOL, tick(100.0))
    assert grid.level_price(SYMBOL, 4) == pytest.approx(99.0)

    signal = grid.should_buy(SYMBOL, tick(99.0))
    assert signal.action == Action.BUY
    assert signal.reason == 'Grid buy at level 4'
    assert signal.confidence == pytest.approx(0.8)
    assert signal.quantity == pytest.approx(100.0 / 99.0)


def test_grid_level_activation_and_release():
    grid = GridStrategy()
    grid.initialize({})
    grid.should_buy(SYMBOL, tick(100.0))
    signal = grid.should_buy(SYMBOL, tick(99.0))
    grid.on_order_filled(SYMBOL, signal)
    assert grid.active_levels(SYMBOL) == [4]

    assert grid.should_buy(SYMBOL, tick(99.0)).action == Action.HOLD

    grid.on_position_closed(SYMBOL, long_position(99.0))
    assert grid.active_levels(SYMBOL) == []
    assert grid.should_buy(SYMBOL, tick(99.0)).action == Action.BUY


def test_grid_outside_range_and_sell_rules():
    grid = GridStrategy()
    grid.initialize({})
    assert grid.should_sell(SYMBOL, tick(100.0), long_position(100.0)).reason == 'Grid not initialized'

    grid.should_buy(SYMBOL, tick(100.0))
    assert grid.should_buy(SYMBOL, tick(80.0)).reason == 'Price outside grid range'

    position = long_position(99.0)
    target = grid.should_sell(SYMBOL, tick(101.0), position)
    assert target.action == Action.SELL
    stop = grid.should_sell(SYMBOL, tick(96.0), position)
    assert stop.action == Action.SELL
    assert stop.confidence == 1.0
    assert grid.should_sell(SYMBOL, tick(99.5), position).action == Action.HOLD


def test_ai_strategy_holds_without_decider_and_gates_decider_output():
    ai = AIStrategy()
    ai.initialize({})
    assert ai.should_buy(SYMBOL, tick(100.0)).action == Action.HOLD

    ai.set_decider(lambda symbol, data, position: Signal(action=Action.BUY, quantity=1.0,
                                                          price=data.price, confidence=1.7))
    signal = ai.should_buy(SYMBOL, tick(100.0))
    assert signal.action == Action.BUY
    assert signal.confidence == 1.0

    ai.set_decider(lambda symbol, data, position: Signal(action=Action.SELL, confidence=0.2))
    gated = ai.should_sell(SYMBOL, tick(100.0), long_position(100.0))
    assert gated.action == Action.HOLD
    assert gated.confidence == pytest.approx(0.2)


def test_registry_selects_and_falls_back(caplog):
    assert isinstance(create_strategy(StrategySettings(type='rsi')), RSIStrategy)
    assert isinstance(create_strategy(StrategySettings(type='grid')), GridStrategy)
    assert isinstance(create_strategy(StrategySettings(type='ai')), AIStrategy)

    fallback = create_strategy(StrategySettings(type='momentum'))
    assert isinstance(fallback, SMAStrategy)
    assert 'falling back' in caplog.text

    with pytest.raises(ConfigurationError):
        create_strategy(StrategySettings(type='simple_moving_average',
                                         parameters={'short_period': 30, 'long_period': 10}))
