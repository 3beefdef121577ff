import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from strategy.execution_types import Kline


DEFAULT_WINDOW = 100
WINDOW_BUFFER = 20


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    price: float
    volume: float = 0.0
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    change: float = 0.0
    timestamp: float = field(default_factory=time.time)
    recent_prices: Tuple[float, ...] = ()
    klines: Tuple[Kline, ...] = ()


class MarketSnapshotCache:
    """Latest market sample per symbol, shared by the collection and decision tasks.

    Writers serialize on a lock and publish each update as a new immutable
    snapshot with a single dict assignment. Readers take no lock: they get
    either the previous or the new snapshot, never a partial update.
    """

    def __init__(self, window: int = DEFAULT_WINDOW, buffer: int = WINDOW_BUFFER):
        if window <= 0:
            raise ValueError("window must be positive")
        self.capacity = window + max(buffer, 0)
        self._lock = threading.Lock()
        self._snapshots: Dict[str, MarketSnapshot] = {}
        self._windows: Dict[str, Deque[float]] = {}

    def update(
        self,
        symbol: str,
        price: float,
        volume: float = 0.0,
        open: Optional[float] = None,
        high: Optional[float] = None,
        low: Optional[float] = None,
        close: Optional[float] = None,
        timestamp: Optional[float] = None,
        klines: Optional[List[Kline]] = None,
    ) -> MarketSnapshot:
        with self._lock:
            window = self._windows.get(symbol)
            if window is None:
                window = deque(maxlen=self.capacity)
                self._windows[symbol] = window
            previous = self._snapshots.get(symbol)
            window.append(float(price))
            change = 0.0
            if previous is not None and previous.price:
                change = (price - previous.price) / previous.price * 100
            snapshot = MarketSnapshot(
                symbol=symbol,
                price=float(price),
                volume=float(volume),
                open=open,
                high=high,
                low=low,
                close=close if close is not None else float(price),
                change=change,
                timestamp=timestamp if timestamp is not None else time.time(),
                recent_prices=tuple(window),
                klines=tuple(klines or ()),
            )
            self._snapshots[symbol] = snapshot
            return snapshot

    def get(self, symbol: str) -> Optional[MarketSnapshot]:
        return self._snapshots.get(symbol)

    def recent_prices(self, symbol: str) -> List[float]:
        snapshot = self.get(symbol)
        return list(snapshot.recent_prices) if snapshot else []

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._snapshots)

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()
            self._windows.clear()
