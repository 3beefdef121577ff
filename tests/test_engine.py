import asyncio
import logging
import sys
from datetime import datetime

sys.path.insert(0, '.')

import pytest

from orchestration.engine import TradeStats, TradingEngine
from orchestration.errors import LifecycleError, PersistenceError
from orchestration.records import Position
from strategy.ai_stub import AIStrategy
from strategy.signal import Action, Signal
from tests.fakes import FakeTransport, InMemoryRepository, RecordingAlerts, make_settings


def buy(quantity=5.0, confidence=0.9):
    def decider(symbol, data, position):
        if position is None:
            return Signal(action=Action.BUY, quantity=quantity, price=data.price,
                          confidence=confidence, reason='model buy')
        return None
    return decider


def sell_when_open(symbol, data, position):
    if position is None:
        return None
    return Signal(action=Action.SELL, quantity=position.size, price=data.price,
                  confidence=0.9, reason='model sell')


def build(prices=None, decider=None, paper=False, symbols=None, repository=None, **kw):
    transport = FakeTransport(prices or {'BTCUSDT': 100.0})
    repo = repository if repository is not None else InMemoryRepository()
    alerts = RecordingAlerts()
    engine = TradingEngine(
        make_settings(paper=paper, symbols=symbols or ['BTCUSDT']),
        transport,
        repository=repo,
        strategy=AIStrategy(decider),
        alerts=alerts,
        shutdown_grace=0.5,
        **kw
    )
    return engine, transport, repo, alerts


def open_position(symbol, entry, size=1.0):
    return Position(symbol=symbol, position_side='LONG', size=size, entry_price=entry,
                    open_time=datetime(2024, 1, 1))


async def tick(engine):
    await engine.collect_market_data()
    await engine.process_trading_signals()


def test_buy_signal_opens_position():
    async def _run():
        engine, transport, repo, _ = build(decider=buy())
        await tick(engine)
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())

    assert len(transport.orders) == 1
    request = transport.orders[0]
    assert request.side == 'BUY'
    assert request.client_order_id.startswith('buy_BTCUSDT_')
    assert repo.orders[0].status == 'FILLED'

    position = repo.positions[0]
    assert position.is_open
    assert position.entry_price == 100.0
    assert position.size == 5.0

    metrics = engine.risk.get_risk_metrics()
    assert metrics.daily_trades == 1
    assert metrics.total_exposure == pytest.approx(500.0)
    assert engine.stats.total_trades == 1


def test_sell_signal_closes_position_with_pnl():
    async def _run():
        engine, transport, repo, _ = build(decider=buy())
        await tick(engine)

        engine.strategy.set_decider(sell_when_open)
        transport.prices['BTCUSDT'] = 103.0
        await tick(engine)
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())

    sell = transport.orders[-1]
    assert sell.side == 'SELL'
    assert sell.reduce_only
    assert sell.client_order_id.startswith('sell_BTCUSDT_')

    position = repo.positions[0]
    assert not position.is_open
    assert position.closed_pnl == pytest.approx(15.0)

    trade = repo.trades[0]
    assert trade.realized_pnl == pytest.approx(15.0)
    assert trade.order_id == repo.orders[-1].id

    assert engine.stats.winning_trades == 1
    assert engine.stats.win_rate == 100.0
    assert engine.risk.get_risk_metrics().total_exposure == 0.0
    assert engine.risk.get_risk_metrics().daily_loss == 0.0


def test_risk_rejection_places_no_order(caplog):
    async def _run():
        engine, transport, repo, _ = build(decider=buy(quantity=15.0))
        await tick(engine)
        return transport, repo

    transport, repo = asyncio.run(_run())
    assert transport.orders == []
    assert repo.positions == []
    assert 'rejected by risk gate' in caplog.text


def test_paper_mode_logs_without_placing_orders(caplog):
    caplog.set_level(logging.INFO)

    async def _run():
        engine, transport, repo, _ = build(decider=buy(), paper=True)
        await engine.start()
        await tick(engine)
        await engine.stop()
        return transport, repo

    transport, repo = asyncio.run(_run())
    assert transport.orders == []
    assert transport.leverage_calls == []
    assert repo.positions == []
    assert '[Paper] BUY BTCUSDT' in caplog.text


def test_forced_stop_loss_overrides_hold():
    async def _run():
        engine, transport, repo, _ = build()
        position = open_position('BTCUSDT', 100.0, size=5.0)
        await repo.create_position(position)
        engine.risk.add_exposure(position.notional)

        transport.prices['BTCUSDT'] = 97.0
        await tick(engine)
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())

    assert transport.orders[-1].side == 'SELL'
    assert repo.orders[-1].notes == 'Stop loss triggered'
    assert repo.trades[0].realized_pnl == pytest.approx(-15.0)
    assert engine.stats.losing_trades == 1
    assert engine.risk.get_risk_metrics().daily_loss == pytest.approx(15.0)


def test_unfilled_order_opens_nothing():
    async def _run():
        engine, transport, repo, _ = build(decider=buy())
        transport.order_status = 'NEW'
        await tick(engine)
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())
    assert len(transport.orders) == 1
    assert repo.positions == []
    assert engine.risk.get_risk_metrics().daily_trades == 0


def test_initialize_symbols_tolerates_failures():
    async def _run():
        engine, transport, _, _ = build(prices={'BTCUSDT': 100.0, 'ETHUSDT': 2000.0},
                                        symbols=['BTCUSDT', 'ETHUSDT'])
        transport.fail_init.add('BTCUSDT')
        await engine.initialize_symbols()
        return transport

    transport = asyncio.run(_run())
    assert [s for s, _ in transport.leverage_calls] == ['BTCUSDT', 'ETHUSDT']
    assert transport.margin_calls[-1] == ('ETHUSDT', 'CROSSED')


def test_market_data_continues_past_failing_symbol(caplog):
    async def _run():
        engine, transport, repo, _ = build(prices={'BTCUSDT': 100.0, 'ETHUSDT': 2000.0},
                                           symbols=['ETHUSDT', 'BTCUSDT'], decider=buy())
        transport.fail_prices.add('ETHUSDT')
        await tick(engine)
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())
    assert [r.symbol for r in repo.market_data] == ['BTCUSDT']
    assert repo.market_data[0].volume == 12.5
    assert engine.get_market_data('ETHUSDT') is None
    assert engine.get_market_data('BTCUSDT').price == 100.0
    assert [o.symbol for o in transport.orders] == ['BTCUSDT']
    assert 'No market data available for ETHUSDT' in caplog.text


def test_liquidation_alerts_failures_and_closes_the_rest():
    async def _run():
        engine, transport, repo, alerts = build(prices={'BTCUSDT': 100.0, 'ETHUSDT': 2000.0},
                                                symbols=['BTCUSDT', 'ETHUSDT'])
        await repo.create_position(open_position('BTCUSDT', 90.0))
        await repo.create_position(open_position('ETHUSDT', 1900.0))
        transport.fail_orders.add('ETHUSDT')
        closed = await engine.close_all_positions()
        return closed, transport, repo, alerts

    closed, transport, repo, alerts = asyncio.run(_run())
    assert closed == 1
    assert alerts.sent == [('liquidation_failed', 'ETHUSDT')]
    assert all(o.client_order_id.startswith('close_') for o in transport.orders)
    assert [p.symbol for p in repo.positions if p.is_open] == ['ETHUSDT']
    assert repo.trades[0].realized_pnl == pytest.approx(10.0)


def test_update_risk_metrics_saves_snapshot():
    async def _run():
        engine, _, repo, _ = build()
        await repo.create_position(open_position('BTCUSDT', 100.0))
        await engine.collect_market_data()
        today = datetime(2024, 3, 10).date()
        engine.stats.total_trades = 2
        engine.stats.record_close(10.0, today)
        engine.stats.record_close(-4.0, today)
        metric = await engine.update_risk_metrics()
        return metric, repo

    metric, repo = asyncio.run(_run())
    assert repo.risk_metrics == [metric]
    assert metric.win_rate == 50.0
    assert metric.total_pnl == pytest.approx(6.0)
    assert metric.max_drawdown == pytest.approx(4.0)
    assert metric.winning_trades == 1
    assert metric.losing_trades == 1


def test_trade_stats_daily_pnl_rolls_over():
    stats = TradeStats()
    stats.record_close(5.0, datetime(2024, 3, 10).date())
    stats.record_close(-2.0, datetime(2024, 3, 11).date())
    assert stats.daily_pnl == -2.0
    assert stats.total_pnl == 3.0
    assert stats.win_rate == 0.0


def test_account_snapshot_is_persisted():
    async def _run():
        engine, _, repo, _ = build()
        account = await engine.update_account_info()
        return account, repo

    account, repo = asyncio.run(_run())
    assert account.total_wallet_balance == 10000.0
    assert repo.accounts == [account]


def test_lifecycle_runs_tasks_and_rejects_double_start():
    async def _run():
        engine, transport, repo, _ = build(risk_interval=0.02, account_interval=0.02)
        engine.trading_interval = 0.01
        await engine.start()
        assert engine.is_running
        with pytest.raises(LifecycleError):
            await engine.start()
        await asyncio.sleep(0.15)
        await engine.stop()
        await engine.stop()
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())
    assert not engine.is_running
    assert transport.leverage_calls == [('BTCUSDT', 5)]
    assert len(repo.market_data) >= 2
    assert repo.risk_metrics
    assert repo.accounts


def test_stop_liquidates_open_positions():
    async def _run():
        engine, transport, repo, _ = build(decider=buy())
        engine.trading_interval = 0.01
        await engine.start()
        await asyncio.sleep(0.1)
        await engine.stop()
        return transport, repo

    transport, repo = asyncio.run(_run())
    assert repo.positions
    assert not any(p.is_open for p in repo.positions)
    assert transport.orders[-1].client_order_id.startswith('close_BTCUSDT_')


def test_emergency_stop_blocks_entries_and_alerts():
    async def _run():
        engine, transport, _, alerts = build(decider=buy())
        await engine.emergency_stop('manual halt')
        await tick(engine)
        return engine, transport, alerts

    engine, transport, alerts = asyncio.run(_run())
    assert transport.orders == []
    assert alerts.sent == [('emergency_stop', 'manual halt')]
    assert engine.risk.get_risk_metrics().emergency_reason == 'manual halt'


def test_status_report():
    engine, _, _, _ = build()
    status = engine.get_status()
    assert status['running'] is False
    assert status['paper_trading'] is False
    assert status['strategy'] == 'AIStrategy'
    assert status['symbols'] == ['BTCUSDT']
    assert status['risk']['daily_trades'] == 0
    assert status['stats']['win_rate'] == 0.0


class FlakyRepository(InMemoryRepository):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def create_position(self, position):
        if self.failures:
            self.failures -= 1
            raise PersistenceError('connection reset')
        return await super().create_position(position)


def test_failed_position_write_does_not_buy_twice():
    async def _run():
        engine, transport, repo, _ = build(decider=buy(), repository=FlakyRepository(failures=1))
        await tick(engine)
        assert repo.positions == []
        await tick(engine)
        return engine, transport, repo

    engine, transport, repo = asyncio.run(_run())
    assert [o.side for o in transport.orders] == ['BUY']
    assert engine.risk.get_risk_metrics().total_exposure == pytest.approx(500.0)
    assert len(repo.positions) == 1
    assert repo.positions[0].id is not None


def test_unsaved_position_is_still_liquidated():
    async def _run():
        engine, transport, repo, _ = build(decider=buy(), repository=FlakyRepository(failures=100))
        await tick(engine)
        closed = await engine.close_all_positions()
        remaining = await engine.open_positions()
        return engine, transport, closed, remaining

    engine, transport, closed, remaining = asyncio.run(_run())
    assert closed == 1
    assert transport.orders[-1].client_order_id.startswith('close_BTCUSDT_')
    assert remaining == []
    assert engine.risk.get_risk_metrics().total_exposure == 0.0


def test_order_quantity_rounded_down_to_lot_step():
    async def _run():
        engine, transport, repo, _ = build(prices={'BTCUSDT': 67123.45},
                                           decider=buy(quantity=1000 / 67123.45))
        transport.steps['BTCUSDT'] = 0.001
        await engine.initialize_symbols()
        await tick(engine)
        return transport, repo

    transport, repo = asyncio.run(_run())
    request = transport.orders[0]
    assert request.quantity == pytest.approx(0.014)
    assert request.to_params()['quantity'] == '0.014'
    assert repo.positions[0].size == pytest.approx(0.014)


def test_quantity_below_lot_step_places_nothing():
    async def _run():
        engine, transport, _, _ = build(prices={'BTCUSDT': 67123.45}, decider=buy(quantity=0.0005))
        transport.steps['BTCUSDT'] = 0.001
        await engine.initialize_symbols()
        await tick(engine)
        return transport

    assert asyncio.run(_run()).orders == []
