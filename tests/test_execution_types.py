import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from orchestration.errors import CollaboratorError
from strategy.execution_types import OrderRequest, SymbolInfo, format_decimal, round_to_step
from strategy.transports.binance import BinanceTransport


class StubREST:
    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    async def get(self, path, params=None, signed=False):
        self.calls.append((path, params))
        return self.payload


EXCHANGE_INFO = {
    'symbols': [{
        'symbol': 'BTCUSDT',
        'pricePrecision': 2,
        'quantityPrecision': 3,
        'filters': [
            {'filterType': 'PRICE_FILTER', 'tickSize': '0.10'},
            {'filterType': 'LOT_SIZE', 'stepSize': '0.001', 'minQty': '0.001'},
        ],
    }],
}


def test_quantities_render_fixed_point():
    assert format_decimal(1000 / 67123.45) == '0.01489792'
    assert format_decimal(100 / 1234567.0) == '0.000081'
    assert format_decimal(5.0) == '5'
    assert format_decimal(10.0) == '10'

    params = OrderRequest(symbol='BTCUSDT', side='BUY', quantity=100 / 1234567.0).to_params()
    assert 'e' not in params['quantity']


def test_round_to_step_rounds_down():
    assert round_to_step(0.014897923155022575, 0.001) == pytest.approx(0.014)
    assert round_to_step(0.0157, 0.001) == pytest.approx(0.015)
    assert round_to_step(3.75, 0.5) == 3.5
    assert round_to_step(1.23456, None) == 1.23456
    assert round_to_step(0.0009, 0.001) == 0.0


def test_symbol_info_step_falls_back_to_precision():
    assert SymbolInfo(symbol='X', step_size=0.01, quantity_precision=3).quantity_step == 0.01
    assert SymbolInfo(symbol='X', quantity_precision=3).quantity_step == pytest.approx(0.001)
    assert SymbolInfo(symbol='X').quantity_step is None


def test_transport_parses_exchange_info():
    rest = StubREST(EXCHANGE_INFO)
    transport = BinanceTransport(rest=rest)

    info = asyncio.run(transport.get_symbol_info('BTCUSDT'))

    assert rest.calls == [('/fapi/v1/exchangeInfo', {'symbol': 'BTCUSDT'})]
    assert info.step_size == 0.001
    assert info.min_qty == 0.001
    assert info.tick_size == pytest.approx(0.1)
    assert info.quantity_precision == 3

    with pytest.raises(CollaboratorError):
        asyncio.run(transport.get_symbol_info('ETHUSDT'))
