import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from api.alerts import AlertWebhook
from api.metrics import MetricsCollector, metrics as default_metrics
from config.settings import Settings
from ingest.snapshot_cache import MarketSnapshotCache
from monitoring.async_utils import run_periodic, shutdown_tasks
from orchestration.errors import CollaboratorError, LifecycleError, RecordNotFoundError
from orchestration.records import (
    Account,
    MarketDataRecord,
    Order,
    Position,
    RiskMetric,
    Trade,
)
from risk.risk_gate import OrderInfo, PortfolioPosition, RiskConfig, RiskGate
from strategy.base import TradingStrategy
from strategy.execution_types import OrderRequest, OrderResponse, round_to_step
from strategy.registry import create_strategy
from strategy.signal import Action, MarketData, PositionSide, Signal


logger = logging.getLogger(__name__)


RISK_METRICS_INTERVAL = 300.0
ACCOUNT_INTERVAL = 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TradeStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    daily_pnl: float = 0.0
    total_pnl: float = 0.0
    peak_pnl: float = 0.0
    max_drawdown: float = 0.0
    day: Optional[date] = None

    @property
    def win_rate(self) -> float:
        if self.total_trades <= 0:
            return 0.0
        return self.winning_trades / self.total_trades * 100

    def record_close(self, pnl: float, today: date) -> None:
        if self.day != today:
            self.day = today
            self.daily_pnl = 0.0
        self.daily_pnl += pnl
        self.total_pnl += pnl
        if pnl > 0:
            self.winning_trades += 1
        else:
            self.losing_trades += 1
        self.peak_pnl = max(self.peak_pnl, self.total_pnl)
        self.max_drawdown = max(self.max_drawdown, self.peak_pnl - self.total_pnl)


class TradingEngine:
    """Runs the market-data, decision, risk-metric and account tasks.

    ``transport`` is the venue client and ``repository`` the persistence
    collaborator; the repository may be None in paper mode, in which case
    nothing is stored and no position is ever considered open.

    Filled positions are also tracked in memory, so a failed repository write
    never hides an open venue position: the write is retried on later ticks
    and liquidation still sees the position.
    """

    def __init__(
        self,
        settings: Settings,
        transport,
        repository=None,
        strategy: Optional[TradingStrategy] = None,
        risk_gate: Optional[RiskGate] = None,
        cache: Optional[MarketSnapshotCache] = None,
        alerts: Optional[AlertWebhook] = None,
        metrics: Optional[MetricsCollector] = None,
        risk_interval: float = RISK_METRICS_INTERVAL,
        account_interval: float = ACCOUNT_INTERVAL,
        shutdown_grace: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.trading = settings.trading
        self.transport = transport
        self.repository = repository
        self.strategy = strategy or create_strategy(self.trading.strategy)
        self.risk = risk_gate or RiskGate(RiskConfig.from_settings(self.trading, settings.risk))
        window = max(self.trading.kline_limit, self.strategy.history_cap())
        self.cache = cache or MarketSnapshotCache(window=window)
        self.alerts = alerts or AlertWebhook(settings.alert_webhook)
        self.metrics = metrics or default_metrics
        self.stats = TradeStats()
        # filled positions keyed by (symbol, side); entries may not be persisted yet
        self._open_positions: Dict[Tuple[str, str], Position] = {}
        self._quantity_steps: Dict[str, float] = {}

        self.trading_interval = float(self.trading.trading_interval_seconds)
        self.risk_interval = risk_interval
        self.account_interval = account_interval
        self.shutdown_grace = shutdown_grace
        self._clock = clock

        self._lifecycle_lock = asyncio.Lock()
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def paper_trading(self) -> bool:
        return self.trading.enable_paper_trading

    # lifecycle

    async def start(self) -> None:
        async with self._lifecycle_lock:
            if self._running:
                raise LifecycleError("trading engine is already running")

            logger.info(
                "Starting trading engine (strategy=%s, symbols=%s, paper=%s)",
                self.strategy.name, ",".join(self.trading.symbols), self.paper_trading,
            )
            await self.initialize_symbols()

            self._stop_event = asyncio.Event()
            schedule = [
                ("market_data", self.trading_interval, self.collect_market_data),
                ("decision", self.trading_interval, self.process_trading_signals),
                ("risk_metrics", self.risk_interval, self.update_risk_metrics),
                ("account", self.account_interval, self.update_account_info),
            ]
            self._tasks = [
                asyncio.create_task(
                    run_periodic(
                        name, interval, func, self._stop_event,
                        on_error=self._on_task_error,
                        on_tick=self.metrics.record_tick,
                    ),
                    name=f"engine-{name}",
                )
                for name, interval, func in schedule
            ]
            self._running = True
            logger.info("Trading engine started")

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            if not self._running:
                return
            logger.info("Stopping trading engine...")
            self._stop_event.set()
            await shutdown_tasks(self._tasks, grace=self.shutdown_grace)
            self._tasks = []

            try:
                await self.close_all_positions()
            except Exception as exc:
                logger.error("Error closing positions during shutdown: %s", exc)

            self._running = False
            logger.info("Trading engine stopped")

    async def initialize_symbols(self) -> None:
        if self.paper_trading:
            logger.info("Paper trading enabled, skipping leverage and margin setup")
            return
        for symbol in self.trading.symbols:
            try:
                info = await self.transport.get_symbol_info(symbol)
                if info.quantity_step:
                    self._quantity_steps[symbol] = info.quantity_step
            except CollaboratorError as exc:
                logger.warning("Failed to load lot size for %s: %s", symbol, exc)
            try:
                await self.transport.set_leverage(symbol, self.trading.max_leverage)
            except CollaboratorError as exc:
                logger.warning("Failed to set leverage for %s: %s", symbol, exc)
            try:
                await self.transport.change_margin_type(symbol, self.trading.margin_type)
            except CollaboratorError as exc:
                logger.warning("Failed to set margin type for %s: %s", symbol, exc)
            logger.info("Initialized symbol %s with leverage %d", symbol, self.trading.max_leverage)

    def _on_task_error(self, task: str, exc: BaseException) -> None:
        self.metrics.record_task_error(task)

    def normalize_quantity(self, symbol: str, quantity: float) -> float:
        """Round down to the symbol's lot step, when it is known."""
        return round_to_step(quantity, self._quantity_steps.get(symbol))

    # market data

    async def collect_market_data(self) -> None:
        for symbol in self.trading.symbols:
            try:
                await self.update_market_data(symbol)
            except Exception as exc:
                self.metrics.record_task_error("market_data")
                logger.error("Failed to update market data for %s: %s", symbol, exc)

    async def update_market_data(self, symbol: str) -> None:
        price = await self.transport.get_symbol_price(symbol)
        klines = await self.transport.get_klines(symbol, self.trading.kline_interval, self.trading.kline_limit)
        last = klines[-1] if klines else None

        snapshot = self.cache.update(
            symbol,
            price,
            volume=last.volume if last else 0.0,
            open=last.open if last else None,
            high=last.high if last else None,
            low=last.low if last else None,
            close=last.close if last else None,
            klines=klines,
        )
        self.metrics.update_price(symbol, price)

        if self.repository is None:
            return
        try:
            await self.repository.save_market_data(MarketDataRecord(
                symbol=symbol,
                price=snapshot.price,
                volume=snapshot.volume,
                timestamp=int(snapshot.timestamp),
                open=snapshot.open,
                high=snapshot.high,
                low=snapshot.low,
                close=snapshot.close,
            ))
        except CollaboratorError as exc:
            logger.error("Failed to save market data for %s: %s", symbol, exc)

    def get_market_data(self, symbol: str) -> Optional[MarketData]:
        snapshot = self.cache.get(symbol)
        if snapshot is None:
            return None
        return MarketData(
            symbol=symbol,
            price=snapshot.price,
            volume=snapshot.volume,
            change=snapshot.change,
            timestamp=snapshot.timestamp,
            klines=list(snapshot.klines),
            open=snapshot.open,
            high=snapshot.high,
            low=snapshot.low,
        )

    # decisions

    async def process_trading_signals(self) -> None:
        for symbol in self.trading.symbols:
            try:
                await self.process_symbol(symbol)
            except Exception as exc:
                self.metrics.record_task_error("decision")
                logger.error("Error processing signals for %s: %s", symbol, exc)

    async def process_symbol(self, symbol: str) -> None:
        data = self.get_market_data(symbol)
        if data is None:
            logger.warning("No market data available for %s", symbol)
            return

        position = await self._load_open_position(symbol)
        if position is not None:
            await self._evaluate_exit(symbol, data, position)
        else:
            await self._evaluate_entry(symbol, data)

    async def _load_open_position(self, symbol: str) -> Optional[Position]:
        key = (symbol, PositionSide.LONG.value)
        position = self._open_positions.get(key)
        if position is not None:
            if position.id is None:
                await self._persist_position(position)
            return position

        if self.repository is None:
            return None
        try:
            position = await self.repository.get_position(symbol, PositionSide.LONG.value)
        except RecordNotFoundError:
            return None
        if not position.is_open:
            return None
        self._open_positions[key] = position
        return position

    async def _persist_position(self, position: Position) -> bool:
        if self.repository is None or position.id is not None:
            return True
        try:
            await self.repository.create_position(position)
        except CollaboratorError as exc:
            logger.error("Failed to save position for %s, will retry: %s", position.symbol, exc)
            return False
        return True

    async def open_positions(self) -> List[Position]:
        """Open positions known in memory, merged with those stored by earlier runs."""
        positions = dict(self._open_positions)
        if self.repository is not None:
            try:
                stored = await self.repository.get_open_positions()
            except CollaboratorError as exc:
                logger.error("Failed to load open positions: %s", exc)
                stored = []
            for position in stored:
                positions.setdefault((position.symbol, position.position_side), position)
        return list(positions.values())

    async def _evaluate_exit(self, symbol: str, data: MarketData, position: Position) -> None:
        position.refresh_mark(data.price)
        if not self.paper_trading and position.id is not None:
            try:
                await self.repository.update_position(position)
            except CollaboratorError as exc:
                logger.error("Failed to refresh mark price for %s: %s", symbol, exc)

        should_close, reason = self.risk.should_close_position(
            PortfolioPosition.from_position(position, data.price))
        if should_close:
            signal = Signal(
                action=Action.SELL,
                quantity=position.size,
                price=data.price,
                confidence=1.0,
                reason=reason,
            )
        else:
            signal = self.strategy.should_sell(symbol, data, position)

        self.metrics.record_signal(symbol, signal.action.value)
        if signal.action != Action.SELL:
            logger.debug("%s sell evaluation: %s", symbol, signal.reason)
            return

        if self.paper_trading:
            logger.info("[Paper] SELL %s qty=%.6f price=%.4f confidence=%.2f: %s",
                        symbol, position.size, data.price, signal.confidence, signal.reason)
            return
        await self.execute_sell(symbol, signal, position)

    async def _evaluate_entry(self, symbol: str, data: MarketData) -> None:
        signal = self.strategy.should_buy(symbol, data)
        self.metrics.record_signal(symbol, signal.action.value)
        if signal.action != Action.BUY:
            logger.debug("%s buy evaluation: %s", symbol, signal.reason)
            return

        signal.quantity = self.normalize_quantity(symbol, signal.quantity)
        if signal.quantity <= 0:
            logger.info("Buy signal for %s is below the lot size, skipping", symbol)
            return

        result = self.risk.validate_order(OrderInfo(
            symbol=symbol,
            side="BUY",
            quantity=signal.quantity,
            price=signal.price or data.price,
        ))
        if not result:
            self.metrics.record_risk_rejection(result.check)
            logger.warning("Order rejected by risk gate for %s: %s", symbol, result.reason)
            return

        if self.paper_trading:
            logger.info("[Paper] BUY %s qty=%.6f price=%.4f confidence=%.2f: %s",
                        symbol, signal.quantity, signal.price, signal.confidence, signal.reason)
            return
        await self.execute_buy(symbol, signal)

    # execution

    async def execute_buy(self, symbol: str, signal: Signal) -> Optional[Position]:
        quantity = self.normalize_quantity(symbol, signal.quantity)
        if quantity <= 0:
            logger.warning("Buy quantity for %s rounds to zero at the lot step", symbol)
            return None
        logger.info("Executing BUY order for %s: quantity=%.6f, price=%.6f",
                    symbol, quantity, signal.price)
        request = OrderRequest(
            symbol=symbol,
            side="BUY",
            type="MARKET",
            quantity=quantity,
            client_order_id=f"buy_{symbol}_{int(time.time())}",
        )
        response = await self.transport.place_order(request)
        self.metrics.record_order_placed("BUY")
        await self._save_order(response, signal.reason)

        if not response.is_filled:
            logger.info("Buy order %s for %s not filled (status=%s)", response.id, symbol, response.status)
            return None

        fill_price = response.fill_price(signal.price)
        quantity = response.executed_qty or quantity
        position = Position(
            symbol=symbol,
            position_side=PositionSide.LONG.value,
            size=quantity,
            entry_price=fill_price,
            open_time=self._clock(),
            mark_price=fill_price,
            leverage=self.trading.max_leverage,
            strategy=self.strategy.name,
            notes=signal.reason,
        )
        self._open_positions[(symbol, position.position_side)] = position
        await self._persist_position(position)

        self.metrics.record_order_filled("BUY")
        self.risk.update_daily_trades()
        self.risk.add_exposure(position.notional)
        self.stats.total_trades += 1
        self.strategy.on_order_filled(symbol, signal)
        logger.info("Buy order executed: %s %s @ %.6f", response.id, symbol, fill_price)
        return position

    async def execute_sell(self, symbol: str, signal: Signal, position: Position,
                           client_prefix: str = "sell") -> Optional[float]:
        logger.info("Executing SELL order for %s: quantity=%.6f (%s)", symbol, position.size, signal.reason)
        request = OrderRequest(
            symbol=symbol,
            side="SELL",
            type="MARKET",
            quantity=position.size,
            reduce_only=True,
            client_order_id=f"{client_prefix}_{symbol}_{int(time.time())}",
        )
        response = await self.transport.place_order(request)
        self.metrics.record_order_placed("SELL")
        order = await self._save_order(response, signal.reason)

        if not response.is_filled:
            logger.info("Sell order %s for %s not filled (status=%s)", response.id, symbol, response.status)
            return None

        close_price = response.fill_price(signal.price or position.mark_price or position.entry_price)
        pnl = (close_price - position.entry_price) * position.size
        await self._record_close(symbol, position, response, order, close_price, pnl)
        logger.info("Sell order executed: %s %s @ %.6f pnl=%.4f", response.id, symbol, close_price, pnl)
        return pnl

    async def _record_close(self, symbol: str, position: Position, response: OrderResponse,
                            order: Optional[Order], close_price: float, pnl: float) -> None:
        self._open_positions.pop((symbol, position.position_side), None)
        if self.repository is not None:
            try:
                if await self._persist_position(position):
                    await self.repository.close_position(position.id, close_price, pnl)
            except CollaboratorError as exc:
                logger.error("Failed to close position %s in storage: %s", position.id, exc)
            try:
                await self.repository.create_trade(Trade(
                    exchange_trade_id=response.id,
                    order_id=order.id if order else None,
                    symbol=symbol,
                    side="SELL",
                    quantity=position.size,
                    price=close_price,
                    quote_qty=close_price * position.size,
                    trade_time=self._clock(),
                    realized_pnl=pnl,
                    position_side=position.position_side,
                    strategy=self.strategy.name,
                ))
            except CollaboratorError as exc:
                logger.error("Failed to save trade for %s: %s", symbol, exc)

        self.metrics.record_order_filled("SELL")
        self.metrics.record_pnl(pnl)
        self.stats.record_close(pnl, self._clock().date())
        if pnl < 0:
            self.risk.update_daily_loss(-pnl)
        self.risk.reduce_exposure(position.notional)
        position.status = "CLOSED"
        position.closed_pnl = pnl
        self.strategy.on_position_closed(symbol, position)

    async def _save_order(self, response: OrderResponse, reason: str) -> Optional[Order]:
        if self.repository is None:
            return None
        order = Order(
            exchange_order_id=response.id,
            symbol=response.symbol,
            side=response.side,
            type=response.type,
            status=response.status or "NEW",
            quantity=response.orig_qty,
            price=response.price,
            executed_qty=response.executed_qty,
            cumulative_quote=response.cum_quote,
            time_in_force=response.time_in_force,
            reduce_only=response.reduce_only,
            close_position=response.close_position,
            position_side=response.position_side,
            strategy=self.strategy.name,
            notes=reason,
        )
        try:
            return await self.repository.create_order(order)
        except CollaboratorError as exc:
            logger.error("Failed to save order %s: %s", response.id, exc)
            return None

    # risk metrics and account

    async def update_risk_metrics(self) -> RiskMetric:
        positions = await self.open_positions()
        portfolio = self.risk.validate_portfolio(
            PortfolioPosition.from_position(p, self._last_price(p.symbol)) for p in positions)
        if not portfolio.is_valid:
            logger.warning("Portfolio risk violations: %s", ", ".join(portfolio.violations))

        risk_state = self.risk.get_risk_metrics()
        self.metrics.update_risk(risk_state.daily_loss, risk_state.daily_trades, risk_state.total_exposure)
        self.metrics.update_win_rate(self.stats.win_rate)

        metric = RiskMetric(
            date=self._clock(),
            total_pnl=self.stats.total_pnl,
            daily_pnl=self.stats.daily_pnl,
            max_drawdown=self.stats.max_drawdown,
            total_trades=self.stats.total_trades,
            winning_trades=self.stats.winning_trades,
            losing_trades=self.stats.losing_trades,
            win_rate=self.stats.win_rate,
            var_95=portfolio.var_95,
            total_exposure=risk_state.total_exposure,
        )
        if self.repository is not None:
            await self.repository.save_risk_metric(metric)
        return metric

    def _last_price(self, symbol: str) -> Optional[float]:
        snapshot = self.cache.get(symbol)
        return snapshot.price if snapshot else None

    async def update_account_info(self) -> Optional[Account]:
        if not self.settings.exchange.api_key:
            logger.debug("No API key configured, skipping account snapshot")
            return None
        info = await self.transport.get_account_info()
        account = Account(**asdict(info))
        self.metrics.update_equity(account.total_wallet_balance)
        if self.repository is not None:
            await self.repository.update_account(account)
        return account

    # shutdown and control

    async def close_all_positions(self) -> int:
        """Liquidate every open position; failures are logged and alerted, never raised."""
        if self.paper_trading:
            return 0

        closed = 0
        for position in await self.open_positions():
            signal = Signal(
                action=Action.SELL,
                quantity=position.size,
                price=self._last_price(position.symbol) or position.mark_price or position.entry_price,
                confidence=1.0,
                reason="Engine shutdown",
            )
            try:
                pnl = await self.execute_sell(position.symbol, signal, position, client_prefix="close")
            except Exception as exc:
                self.metrics.record_liquidation_failure()
                logger.error("Failed to close position for %s: %s", position.symbol, exc)
                await self.alerts.liquidation_failed_alert(position.symbol, str(exc))
                continue
            if pnl is not None:
                closed += 1
                logger.info("Closed position for %s", position.symbol)
        return closed

    async def emergency_stop(self, reason: str) -> None:
        self.risk.emergency_stop(reason)
        self.metrics.record_emergency_stop()
        await self.alerts.emergency_stop_alert(reason)

    def get_status(self) -> Dict[str, Any]:
        risk = self.risk.get_risk_metrics()
        return {
            'running': self._running,
            'paper_trading': self.paper_trading,
            'strategy': self.strategy.name,
            'symbols': list(self.trading.symbols),
            'risk': asdict(risk),
            'stats': {
                'total_trades': self.stats.total_trades,
                'winning_trades': self.stats.winning_trades,
                'losing_trades': self.stats.losing_trades,
                'win_rate': self.stats.win_rate,
                'daily_pnl': self.stats.daily_pnl,
                'total_pnl': self.stats.total_pnl,
                'max_drawdown': self.stats.max_drawdown,
            },
        }
