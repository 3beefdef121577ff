import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from config.settings import RiskSettings, TradingSettings
from orchestration.records import Position
from risk.position_sizer import PositionSizer, is_long

logger = logging.getLogger(__name__)


Clock = Callable[[], datetime]

VIOLATION_EXPOSURE = "Total exposure exceeds limit"
VIOLATION_VAR = "VaR exceeds limit"
VIOLATION_DRAWDOWN = "Drawdown exceeds limit"

REASON_STOP_LOSS = "Stop loss triggered"
REASON_TAKE_PROFIT = "Take profit triggered"
REASON_MAX_LOSS = "Maximum loss exceeded"


@dataclass(frozen=True)
class RiskConfig:
    max_position_size: float = 1000.0
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 5.0
    max_daily_loss: float = 500.0
    max_leverage: int = 5
    risk_per_trade_percent: float = 1.0
    max_drawdown: float = 10.0
    max_open_positions: int = 0
    min_order_value: float = 10.0
    max_order_value: float = 0.0
    var_limit: float = 0.05
    max_exposure: float = 0.0

    @classmethod
    def from_settings(cls, trading: TradingSettings, risk: Optional[RiskSettings] = None) -> 'RiskConfig':
        risk = risk or RiskSettings()
        return cls(
            max_position_size=trading.max_position_size,
            stop_loss_percent=trading.stop_loss_percent,
            take_profit_percent=trading.take_profit_percent,
            max_daily_loss=trading.max_daily_loss,
            max_leverage=trading.max_leverage,
            risk_per_trade_percent=trading.risk_per_trade_percent,
            max_drawdown=risk.max_drawdown,
            max_open_positions=risk.max_open_positions,
            min_order_value=trading.min_order_value,
            max_order_value=risk.max_order_value,
            var_limit=risk.var_limit,
            max_exposure=risk.max_exposure,
        )

    @property
    def effective_max_exposure(self) -> float:
        return self.max_exposure if self.max_exposure > 0 else self.max_position_size * 10


@dataclass
class RiskState:
    daily_loss: float = 0.0
    daily_trades: int = 0
    total_exposure: float = 0.0
    max_exposure: float = 0.0
    last_reset_date: Optional[datetime] = None
    emergency_reason: Optional[str] = None


@dataclass
class OrderInfo:
    symbol: str
    side: str
    quantity: float
    price: float
    order_type: str = "MARKET"

    @property
    def notional(self) -> float:
        return self.quantity * self.price


@dataclass
class ValidationResult:
    """Outcome of ``RiskGate.validate_order``; falsy when rejected."""

    approved: bool
    check: Optional[str] = None
    reason: str = ""

    def __bool__(self) -> bool:
        return self.approved


@dataclass
class PortfolioPosition:
    symbol: str
    side: str
    size: float
    entry_price: float
    current_price: float
    value: float
    unrealized_pnl: float
    leverage: int = 1

    @classmethod
    def from_position(cls, position: Position, current_price: Optional[float] = None) -> 'PortfolioPosition':
        price = current_price or position.mark_price or position.entry_price
        direction = 1.0 if position.position_side != "SHORT" else -1.0
        return cls(
            symbol=position.symbol,
            side=position.position_side,
            size=position.size,
            entry_price=position.entry_price,
            current_price=price,
            value=position.size * price,
            unrealized_pnl=(price - position.entry_price) * position.size * direction,
            leverage=position.leverage,
        )


@dataclass
class PortfolioRisk:
    total_value: float = 0.0
    total_pnl: float = 0.0
    total_exposure: float = 0.0
    portfolio_return: float = 0.0
    var_95: float = 0.0
    is_valid: bool = True
    violations: List[str] = field(default_factory=list)


@dataclass
class RiskMetrics:
    daily_loss: float
    daily_trades: int
    total_exposure: float
    max_exposure: float
    exposure_ratio: float
    remaining_risk: float
    trading_allowed: bool
    last_reset_date: Optional[datetime]
    emergency_reason: Optional[str] = None


def calculate_var_95(returns: Iterable[float]) -> float:
    """Absolute value of the empirical 5th percentile return."""
    values = np.sort(np.asarray(list(returns), dtype=float))
    if values.size == 0:
        return 0.0
    index = min(int(values.size * 0.05), values.size - 1)
    return float(abs(values[index]))


class RiskGate:
    """Pre-trade order validation plus daily and aggregate risk counters.

    Counter mutations and reads go through an internal lock, so the update
    calls may come from several tasks or threads. ``validate_order`` never
    mutates counters other than the daily reset.
    """

    def __init__(self, config: RiskConfig, clock: Clock = datetime.now):
        self.config = config
        self.sizer = PositionSizer(
            stop_loss_percent=config.stop_loss_percent,
            take_profit_percent=config.take_profit_percent,
            risk_per_trade_percent=config.risk_per_trade_percent,
            max_position_size=config.max_position_size,
        )
        self._clock = clock
        self._lock = threading.RLock()
        self.state = RiskState(
            max_exposure=config.effective_max_exposure,
            last_reset_date=clock(),
        )

    # order validation

    def validate_order(self, order: OrderInfo) -> ValidationResult:
        with self._lock:
            self._reset_daily_counters_if_needed()
            checks: List[Tuple[str, Callable[[OrderInfo], Optional[str]]]] = [
                ("trading_allowed", self._check_trading_allowed),
                ("order_size", self._check_order_size),
                ("position_size", self._check_position_size),
                ("daily_loss", self._check_daily_loss),
                ("exposure", self._check_exposure),
                ("risk_per_trade", self._check_risk_per_trade),
            ]
            for name, check in checks:
                failure = check(order)
                if failure is not None:
                    logger.debug("Risk check %s failed for %s: %s", name, order.symbol, failure)
                    return ValidationResult(approved=False, check=name, reason=failure)
        return ValidationResult(approved=True)

    def _check_trading_allowed(self, order: OrderInfo) -> Optional[str]:
        if not self._is_trading_allowed():
            if self.state.emergency_reason:
                return f"Trading halted by emergency stop: {self.state.emergency_reason}"
            return "Trading not allowed: daily trade or loss limit reached"
        return None

    def _check_order_size(self, order: OrderInfo) -> Optional[str]:
        value = order.notional
        if value < self.config.min_order_value:
            return f"Order value {value:.2f} below minimum {self.config.min_order_value:.2f}"
        if self.config.max_order_value > 0 and value > self.config.max_order_value:
            return f"Order value {value:.2f} exceeds maximum {self.config.max_order_value:.2f}"
        return None

    def _check_position_size(self, order: OrderInfo) -> Optional[str]:
        value = order.notional
        if value > self.config.max_position_size:
            return f"Position size {value:.2f} exceeds maximum {self.config.max_position_size:.2f}"
        return None

    def _check_daily_loss(self, order: OrderInfo) -> Optional[str]:
        if self.state.daily_loss >= self.config.max_daily_loss:
            return f"Daily loss {self.state.daily_loss:.2f} exceeds limit {self.config.max_daily_loss:.2f}"
        return None

    def _check_exposure(self, order: OrderInfo) -> Optional[str]:
        new_exposure = self.state.total_exposure + order.notional
        if new_exposure > self.state.max_exposure:
            return f"New exposure {new_exposure:.2f} would exceed limit {self.state.max_exposure:.2f}"
        return None

    def _check_risk_per_trade(self, order: OrderInfo) -> Optional[str]:
        # Bounded by the position-size cap, not by the order's stop distance.
        risk_pct = self.config.risk_per_trade_percent / 100.0
        risk_amount = order.notional * risk_pct
        max_risk = self.config.max_position_size * risk_pct
        if risk_amount > max_risk:
            return f"Risk amount {risk_amount:.2f} exceeds limit {max_risk:.2f}"
        return None

    def _is_trading_allowed(self) -> bool:
        limit = self.config.max_open_positions
        if limit > 0 and self.state.daily_trades >= limit:
            return False
        return self.state.daily_loss < self.config.max_daily_loss

    def _reset_daily_counters_if_needed(self) -> None:
        now = self._clock()
        last = self.state.last_reset_date
        if last is None or now.date() != last.date():
            self.state.daily_loss = 0.0
            self.state.daily_trades = 0
            self.state.emergency_reason = None
            self.state.last_reset_date = now
            logger.info("Daily risk counters reset")

    # counter updates

    def update_daily_loss(self, loss: float) -> float:
        with self._lock:
            self._reset_daily_counters_if_needed()
            self.state.daily_loss += loss
            logger.debug("Daily loss updated: %.2f", self.state.daily_loss)
            return self.state.daily_loss

    def update_daily_trades(self) -> int:
        with self._lock:
            self._reset_daily_counters_if_needed()
            self.state.daily_trades += 1
            logger.debug("Daily trades updated: %d", self.state.daily_trades)
            return self.state.daily_trades

    def update_exposure(self, exposure: float) -> None:
        with self._lock:
            self.state.total_exposure = max(exposure, 0.0)
            logger.debug("Total exposure updated: %.2f", self.state.total_exposure)

    def add_exposure(self, notional: float) -> float:
        with self._lock:
            self.state.total_exposure += abs(notional)
            return self.state.total_exposure

    def reduce_exposure(self, notional: float) -> float:
        with self._lock:
            self.state.total_exposure = max(self.state.total_exposure - abs(notional), 0.0)
            return self.state.total_exposure

    def emergency_stop(self, reason: str) -> None:
        """Latch trading off until the next daily reset."""
        with self._lock:
            logger.error("EMERGENCY STOP TRIGGERED: %s", reason)
            self.state.daily_loss = self.config.max_daily_loss
            self.state.emergency_reason = reason

    def is_trading_allowed(self) -> bool:
        with self._lock:
            self._reset_daily_counters_if_needed()
            return self._is_trading_allowed()

    def get_risk_metrics(self) -> RiskMetrics:
        with self._lock:
            self._reset_daily_counters_if_needed()
            state = self.state
            ratio = state.total_exposure / state.max_exposure if state.max_exposure else 0.0
            return RiskMetrics(
                daily_loss=state.daily_loss,
                daily_trades=state.daily_trades,
                total_exposure=state.total_exposure,
                max_exposure=state.max_exposure,
                exposure_ratio=ratio,
                remaining_risk=max(0.0, self.config.max_daily_loss - state.daily_loss),
                trading_allowed=self._is_trading_allowed(),
                last_reset_date=state.last_reset_date,
                emergency_reason=state.emergency_reason,
            )

    # portfolio assessment

    def validate_portfolio(self, positions: Iterable[PortfolioPosition]) -> PortfolioRisk:
        positions = list(positions)
        total_value = sum(p.value for p in positions)
        total_pnl = sum(p.unrealized_pnl for p in positions)
        total_exposure = sum(abs(p.value) for p in positions)

        portfolio_return = total_pnl / total_value * 100 if total_value > 0 else 0.0
        var_95 = calculate_var_95(p.unrealized_pnl / p.value for p in positions if p.value > 0)

        violations = []
        if total_exposure > self.state.max_exposure:
            violations.append(VIOLATION_EXPOSURE)
        if var_95 > self.config.var_limit:
            violations.append(VIOLATION_VAR)
        if abs(portfolio_return) > self.config.max_drawdown:
            violations.append(VIOLATION_DRAWDOWN)

        return PortfolioRisk(
            total_value=total_value,
            total_pnl=total_pnl,
            total_exposure=total_exposure,
            portfolio_return=portfolio_return,
            var_95=var_95,
            is_valid=not violations,
            violations=violations,
        )

    def should_close_position(self, position: PortfolioPosition) -> Tuple[bool, str]:
        long_side = is_long(position.side)
        stop = self.sizer.calculate_stop_loss(position.entry_price, position.side)
        target = self.sizer.calculate_take_profit(position.entry_price, position.side)

        if long_side and position.current_price <= stop:
            return True, REASON_STOP_LOSS
        if not long_side and position.current_price >= stop:
            return True, REASON_STOP_LOSS

        if long_side and position.current_price >= target:
            return True, REASON_TAKE_PROFIT
        if not long_side and position.current_price <= target:
            return True, REASON_TAKE_PROFIT

        # Emergency exit at twice the configured stop, counted on losses only.
        if position.value and position.unrealized_pnl < 0:
            loss_pct = abs(position.unrealized_pnl / position.value) * 100
            if loss_pct > self.config.stop_loss_percent * 2:
                return True, REASON_MAX_LOSS

        return False, ""

    # sizing helpers

    def calculate_position_size(self, account_balance: float, entry_price: float, stop_loss: float) -> float:
        return self.sizer.calculate_position_size(account_balance, entry_price, stop_loss)

    def calculate_stop_loss(self, entry_price: float, side: str) -> float:
        return self.sizer.calculate_stop_loss(entry_price, side)

    def calculate_take_profit(self, entry_price: float, side: str) -> float:
        return self.sizer.calculate_take_profit(entry_price, side)
