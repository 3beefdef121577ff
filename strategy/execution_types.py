from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional


DECIMAL_PLACES = 8


def format_decimal(value: float, decimals: int = DECIMAL_PLACES) -> str:
    """Fixed-point rendering for the venue: never exponent notation, no trailing zeros."""
    text = f"{float(value):.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def round_to_step(value: float, step: Optional[float]) -> float:
    """Round ``value`` down to a multiple of the lot ``step``; no-op without a step."""
    if not step or step <= 0:
        return float(value)
    step_dec = Decimal(str(step))
    units = (Decimal(str(value)) / step_dec).to_integral_value(rounding=ROUND_DOWN)
    return float(units * step_dec)


@dataclass
class SymbolInfo:
    symbol: str
    quantity_precision: Optional[int] = None
    price_precision: Optional[int] = None
    step_size: Optional[float] = None
    min_qty: Optional[float] = None
    tick_size: Optional[float] = None

    @property
    def quantity_step(self) -> Optional[float]:
        if self.step_size:
            return self.step_size
        if self.quantity_precision is not None:
            return 10 ** -self.quantity_precision
        return None


@dataclass
class OrderRequest:
    """Order submission parameters for the futures venue."""

    symbol: str
    side: str
    type: str = "MARKET"
    quantity: float = 0.0
    price: Optional[float] = None
    stop_price: Optional[float] = None
    time_in_force: Optional[str] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: str = "BOTH"
    client_order_id: Optional[str] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.upper(),
            "type": self.type.upper(),
            "positionSide": self.position_side,
            "newOrderRespType": "RESULT",
        }
        if self.close_position:
            params["closePosition"] = "true"
        else:
            params["quantity"] = format_decimal(self.quantity)
            if self.reduce_only:
                params["reduceOnly"] = "true"
        if self.price is not None:
            params["price"] = format_decimal(self.price)
        if self.stop_price is not None:
            params["stopPrice"] = format_decimal(self.stop_price)
        if self.time_in_force:
            params["timeInForce"] = self.time_in_force
        if self.client_order_id:
            params["newClientOrderId"] = self.client_order_id
        return params


@dataclass
class OrderResponse:
    """Normalized view of an order acknowledgement."""

    symbol: str
    side: str
    type: str
    status: Optional[str] = None
    orig_qty: float = 0.0
    executed_qty: float = 0.0
    price: float = 0.0
    avg_price: float = 0.0
    cum_quote: float = 0.0
    time_in_force: Optional[str] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: str = "BOTH"
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        return "order"

    @property
    def is_filled(self) -> bool:
        return (self.status or "").upper() == "FILLED"

    def fill_price(self, fallback: float = 0.0) -> float:
        if self.avg_price > 0:
            return self.avg_price
        if self.executed_qty > 0 and self.cum_quote > 0:
            return self.cum_quote / self.executed_qty
        return fallback


@dataclass
class Kline:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    quote_volume: float = 0.0
    trades: int = 0


@dataclass
class AccountInfo:
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
