from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass
class Order:
    exchange_order_id: str
    symbol: str
    side: str
    type: str
    status: str
    quantity: float
    price: float = 0.0
    stop_price: float = 0.0
    executed_qty: float = 0.0
    cumulative_quote: float = 0.0
    time_in_force: Optional[str] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: str = "BOTH"
    strategy: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Position:
    symbol: str
    position_side: str
    size: float
    entry_price: float
    open_time: datetime
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0
    leverage: int = 1
    status: str = PositionStatus.OPEN.value
    close_time: Optional[datetime] = None
    closed_pnl: float = 0.0
    strategy: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN.value

    @property
    def notional(self) -> float:
        return abs(self.size * self.entry_price)

    def refresh_mark(self, mark_price: float) -> None:
        self.mark_price = mark_price
        direction = 1.0 if self.position_side == "LONG" else -1.0
        self.unrealized_pnl = (mark_price - self.entry_price) * self.size * direction

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Trade:
    exchange_trade_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    quote_qty: float
    trade_time: datetime
    order_id: Optional[int] = None
    commission: float = 0.0
    commission_asset: Optional[str] = None
    realized_pnl: float = 0.0
    is_maker: bool = False
    position_side: str = "BOTH"
    strategy: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Account:
    total_wallet_balance: float = 0.0
    total_unrealized_pnl: float = 0.0
    total_margin_balance: float = 0.0
    total_position_im: float = 0.0
    total_open_order_im: float = 0.0
    total_cross_wallet_balance: float = 0.0
    available_balance: float = 0.0
    max_withdraw_amount: float = 0.0
    can_trade: bool = True
    can_withdraw: bool = True
    can_deposit: bool = True
    update_time: int = 0
    id: Optional[int] = None


@dataclass
class MarketDataRecord:
    symbol: str
    price: float
    volume: float
    timestamp: int
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    id: Optional[int] = None


@dataclass
class RiskMetric:
    date: datetime
    total_pnl: float = 0.0
    daily_pnl: float = 0.0
    max_drawdown: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    var_95: float = 0.0
    total_exposure: float = 0.0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
