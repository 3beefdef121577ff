import asyncio
import logging
from typing import Any, Dict, List, Optional

from config.settings import ExchangeSettings
from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from orchestration.errors import CollaboratorError
from strategy.execution_types import AccountInfo, Kline, OrderRequest, OrderResponse, SymbolInfo

logger = logging.getLogger(__name__)


__all__ = ["BinanceTransport", "BinanceAPIError"]

# "No need to change margin type."
MARGIN_TYPE_UNCHANGED = -4046


class BinanceTransport:
    """Venue client: typed wrappers over the futures REST endpoints.

    Calls are made once; failures surface as CollaboratorError.
    """

    def __init__(self, settings: Optional[ExchangeSettings] = None,
                 rest: Optional[BinanceRESTClient] = None) -> None:
        self._settings = settings or ExchangeSettings()
        self._rest = rest
        self._lock = asyncio.Lock()

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient(self._settings)
        return self._rest

    async def get_symbol_price(self, symbol: str) -> float:
        data = await self._client().get("/fapi/v1/ticker/price", params={"symbol": symbol})
        price = self._as_float(data.get("price")) if isinstance(data, dict) else None
        if price is None:
            raise CollaboratorError(f"Unexpected ticker payload for {symbol}: {data!r}")
        return price

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        data = await self._client().get("/fapi/v1/exchangeInfo", params={"symbol": symbol})
        symbols = data.get("symbols") if isinstance(data, dict) else None
        for payload in symbols or []:
            if payload.get("symbol") == symbol:
                return self._parse_symbol_info(payload)
        raise CollaboratorError(f"No exchange info for {symbol}")

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Kline]:
        data = await self._client().get(
            "/fapi/v1/klines",
            params={"symbol": symbol, "interval": interval, "limit": limit},
        )
        if not isinstance(data, list):
            raise CollaboratorError(f"Unexpected klines payload for {symbol}")
        return [self._parse_kline(row) for row in data]

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        data = await self._client().post("/fapi/v1/order", params=request.to_params(), signed=True)
        response = self._parse_order(data)
        if response is None:
            raise CollaboratorError(f"Unexpected order payload for {request.symbol}: {data!r}")
        return response

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self._client().post(
            "/fapi/v1/leverage",
            params={"symbol": symbol, "leverage": leverage},
            signed=True,
        )

    async def change_margin_type(self, symbol: str, margin_type: str) -> None:
        try:
            await self._client().post(
                "/fapi/v1/marginType",
                params={"symbol": symbol, "marginType": margin_type.upper()},
                signed=True,
            )
        except BinanceAPIError as exc:
            if exc.code != MARGIN_TYPE_UNCHANGED:
                raise
            logger.debug("Margin type for %s already %s", symbol, margin_type)

    async def get_account_info(self) -> AccountInfo:
        data = await self._client().get("/fapi/v2/account", signed=True)
        if not isinstance(data, dict):
            raise CollaboratorError("Unexpected account payload")
        f = self._as_float
        return AccountInfo(
            total_wallet_balance=f(data.get("totalWalletBalance")) or 0.0,
            total_unrealized_pnl=f(data.get("totalUnrealizedProfit")) or 0.0,
            total_margin_balance=f(data.get("totalMarginBalance")) or 0.0,
            total_position_im=f(data.get("totalPositionInitialMargin")) or 0.0,
            total_open_order_im=f(data.get("totalOpenOrderInitialMargin")) or 0.0,
            total_cross_wallet_balance=f(data.get("totalCrossWalletBalance")) or 0.0,
            available_balance=f(data.get("availableBalance")) or 0.0,
            max_withdraw_amount=f(data.get("maxWithdrawAmount")) or 0.0,
            can_trade=bool(data.get("canTrade", True)),
            can_withdraw=bool(data.get("canWithdraw", True)),
            can_deposit=bool(data.get("canDeposit", True)),
            update_time=self._as_int(data.get("updateTime")) or 0,
        )

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        info = SymbolInfo(
            symbol=payload.get("symbol", ""),
            quantity_precision=self._as_int(payload.get("quantityPrecision")),
            price_precision=self._as_int(payload.get("pricePrecision")),
        )
        for filt in payload.get("filters") or []:
            ftype = filt.get("filterType")
            if ftype == "LOT_SIZE":
                info.step_size = self._as_float(filt.get("stepSize"))
                info.min_qty = self._as_float(filt.get("minQty"))
            elif ftype == "PRICE_FILTER":
                info.tick_size = self._as_float(filt.get("tickSize"))
        return info

    def _parse_kline(self, row: List[Any]) -> Kline:
        f = self._as_float
        extra = list(row[7:9]) + [None] * (9 - max(len(row), 7))
        return Kline(
            open_time=int(row[0]),
            open=f(row[1]) or 0.0,
            high=f(row[2]) or 0.0,
            low=f(row[3]) or 0.0,
            close=f(row[4]) or 0.0,
            volume=f(row[5]) or 0.0,
            close_time=int(row[6]),
            quote_volume=f(extra[0]) or 0.0,
            trades=self._as_int(extra[1]) or 0,
        )

    def _parse_order(self, payload: Any) -> Optional[OrderResponse]:
        if not isinstance(payload, dict):
            return None
        f = self._as_float
        return OrderResponse(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            status=payload.get("status"),
            orig_qty=f(payload.get("origQty")) or 0.0,
            executed_qty=f(payload.get("executedQty")) or 0.0,
            price=f(payload.get("price")) or 0.0,
            avg_price=f(payload.get("avgPrice")) or 0.0,
            cum_quote=f(payload.get("cumQuote")) or 0.0,
            time_in_force=payload.get("timeInForce"),
            reduce_only=bool(payload.get("reduceOnly", False)),
            close_position=bool(payload.get("closePosition", False)),
            position_side=payload.get("positionSide") or "BOTH",
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
