import sys
import threading

sys.path.insert(0, '.')

import pytest

from ingest.snapshot_cache import MarketSnapshotCache


def test_window_is_bounded_and_fifo():
    cache = MarketSnapshotCache(window=10, buffer=5)
    for i in range(100):
        cache.update('BTCUSDT', 100.0 + i)

    prices = cache.recent_prices('BTCUSDT')
    assert len(prices) == cache.capacity == 15
    assert prices[0] == 185.0
    assert prices[-1] == 199.0


def test_snapshots_are_immutable_views():
    cache = MarketSnapshotCache(window=5)
    first = cache.update('ETHUSDT', 2000.0, volume=3.0, high=2010.0, low=1990.0)
    cache.update('ETHUSDT', 2100.0)

    assert first.price == 2000.0
    assert first.recent_prices == (2000.0,)
    latest = cache.get('ETHUSDT')
    assert latest.price == 2100.0
    assert latest.recent_prices == (2000.0, 2100.0)
    assert latest.change == pytest.approx(5.0)
    with pytest.raises(AttributeError):
        latest.price = 1.0


def test_unknown_symbol_and_clear():
    cache = MarketSnapshotCache()
    assert cache.get('XRPUSDT') is None
    assert cache.recent_prices('XRPUSDT') == []
    cache.update('XRPUSDT', 0.5)
    assert cache.symbols() == ['XRPUSDT']
    cache.clear()
    assert cache.get('XRPUSDT') is None


def test_concurrent_writers_and_readers():
    cache = MarketSnapshotCache(window=50, buffer=0)
    errors = []

    def writer(symbol):
        for i in range(500):
            cache.update(symbol, float(i))

    def reader():
        for _ in range(500):
            for symbol in ('A', 'B'):
                snapshot = cache.get(symbol)
                if snapshot is None:
                    continue
                if len(snapshot.recent_prices) > 50 or snapshot.recent_prices[-1] != snapshot.price:
                    errors.append(snapshot)

    threads = [threading.Thread(target=writer, args=(s,)) for s in ('A', 'B')]
    threads += [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert cache.get('A').price == 499.0
    assert len(cache.recent_prices('B')) == 50


def test_readers_do_not_wait_for_writer_lock():
    cache = MarketSnapshotCache(window=5)
    cache.update('BTCUSDT', 100.0)
    seen = []

    with cache._lock:
        reader = threading.Thread(target=lambda: seen.append(cache.get('BTCUSDT')))
        reader.start()
        reader.join(timeout=1.0)
        assert not reader.is_alive()

    assert seen[0].price == 100.0
