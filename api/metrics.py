import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.signals = Counter('trading_signals_total', 'Strategy signals emitted', ['symbol', 'action'])
        self.orders_placed = Counter('orders_placed_total', 'Orders submitted to the venue', ['side'])
        self.orders_filled = Counter('orders_filled_total', 'Orders reported filled', ['side'])
        self.risk_rejections = Counter('risk_rejections_total', 'Orders declined by the risk gate', ['check'])
        self.task_errors = Counter('task_errors_total', 'Errors raised inside periodic tasks', ['task'])
        self.liquidation_failures = Counter('liquidation_failures_total', 'Positions that failed to close on shutdown')
        self.emergency_stops = Counter('emergency_stops_total', 'Emergency stop activations')

        self.tick_duration = Histogram('task_tick_seconds', 'Duration of one periodic task iteration', ['task'])

        self.last_price = Gauge('last_price', 'Last collected price', ['symbol'])
        self.equity = Gauge('account_equity', 'Current account wallet balance')
        self.daily_loss = Gauge('risk_daily_loss', 'Accumulated daily loss')
        self.daily_trades = Gauge('risk_daily_trades', 'Trades executed today')
        self.total_exposure = Gauge('risk_total_exposure', 'Total open notional')
        self.win_rate = Gauge('win_rate_percent', 'Winning trades as a percentage of closed trades')
        self.pnl_realized = Gauge('pnl_realized', 'Realized PnL since process start')

    def record_signal(self, symbol: str, action: str):
        self.signals.labels(symbol=symbol, action=action).inc()

    def record_order_placed(self, side: str):
        self.orders_placed.labels(side=side).inc()

    def record_order_filled(self, side: str):
        self.orders_filled.labels(side=side).inc()

    def record_risk_rejection(self, check: Optional[str]):
        self.risk_rejections.labels(check=check or 'unknown').inc()

    def record_task_error(self, task: str):
        self.task_errors.labels(task=task).inc()

    def record_tick(self, task: str, seconds: float):
        self.tick_duration.labels(task=task).observe(seconds)

    def record_liquidation_failure(self):
        self.liquidation_failures.inc()

    def record_emergency_stop(self):
        self.emergency_stops.inc()

    def update_price(self, symbol: str, price: float):
        self.last_price.labels(symbol=symbol).set(price)

    def update_equity(self, equity: float):
        self.equity.set(equity)

    def update_risk(self, daily_loss: float, daily_trades: int, total_exposure: float):
        self.daily_loss.set(daily_loss)
        self.daily_trades.set(daily_trades)
        self.total_exposure.set(total_exposure)

    def update_win_rate(self, win_rate: float):
        self.win_rate.set(win_rate)

    def record_pnl(self, pnl: float):
        self.pnl_realized.inc(pnl)


def start_metrics_server(port: int = 9108, port_scan_limit: int = 0) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning("Prometheus metrics server port %s already in use; trying next candidate", candidate)
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(
        f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
    ) from last_error


metrics = MetricsCollector()
