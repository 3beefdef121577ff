import logging
from dataclasses import fields
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Type, TypeVar

import asyncpg

from config.settings import DatabaseSettings
from orchestration.errors import PersistenceError, RecordNotFoundError
from orchestration.records import (
    Account,
    MarketDataRecord,
    Order,
    Position,
    PositionStatus,
    RiskMetric,
    Trade,
)


logger = logging.getLogger(__name__)

T = TypeVar('T')

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _from_row(cls: Type[T], row) -> T:
    names = {f.name for f in fields(cls)}
    values = {}
    for key, value in dict(row).items():
        if key not in names:
            continue
        if isinstance(value, Decimal):
            value = float(value)
        values[key] = value
    return cls(**values)


class TradingRepository:
    """asyncpg-backed storage for orders, positions, trades, accounts and metrics."""

    def __init__(self, settings: Optional[DatabaseSettings] = None, pool=None):
        self.settings = settings or DatabaseSettings()
        self.pool = pool

    async def initialize(self):
        if self.pool is not None:
            return
        db = self.settings
        try:
            self.pool = await asyncpg.create_pool(
                host=db.host,
                port=db.port,
                database=db.database,
                user=db.user,
                password=db.password,
                min_size=db.min_pool_size,
                max_size=db.max_pool_size,
            )
        except DB_ERRORS as exc:
            raise PersistenceError(f"database connection failed: {exc}") from exc
        logger.info("Connected to PostgreSQL at %s:%s/%s", db.host, db.port, db.database)

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _execute(self, query: str, *args) -> str:
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(query, *args)
        except DB_ERRORS as exc:
            raise PersistenceError(str(exc)) from exc

    async def _fetchrow(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except DB_ERRORS as exc:
            raise PersistenceError(str(exc)) from exc

    async def _fetch(self, query: str, *args) -> List[Any]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except DB_ERRORS as exc:
            raise PersistenceError(str(exc)) from exc

    # orders

    async def create_order(self, order: Order) -> Order:
        row = await self._fetchrow(
            '''INSERT INTO orders (exchange_order_id, symbol, side, type, status, quantity, price,
                                   stop_price, executed_qty, cumulative_quote, time_in_force,
                                   reduce_only, close_position, position_side, strategy, notes)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
               RETURNING id, created_at, updated_at''',
            order.exchange_order_id, order.symbol, order.side, order.type, order.status,
            order.quantity, order.price, order.stop_price, order.executed_qty,
            order.cumulative_quote, order.time_in_force, order.reduce_only,
            order.close_position, order.position_side, order.strategy, order.notes,
        )
        order.id = row['id']
        order.created_at = row['created_at']
        order.updated_at = row['updated_at']
        return order

    async def update_order(self, order: Order) -> None:
        if order.id is None:
            raise RecordNotFoundError('order', order.exchange_order_id)
        status = await self._execute(
            '''UPDATE orders SET status = $2, executed_qty = $3, cumulative_quote = $4,
                                 price = $5, notes = $6, updated_at = now()
               WHERE id = $1''',
            order.id, order.status, order.executed_qty, order.cumulative_quote,
            order.price, order.notes,
        )
        if status.endswith(' 0'):
            raise RecordNotFoundError('order', order.id)

    async def get_order(self, order_id: int) -> Order:
        row = await self._fetchrow('SELECT * FROM orders WHERE id = $1', order_id)
        if row is None:
            raise RecordNotFoundError('order', order_id)
        return _from_row(Order, row)

    async def get_order_by_exchange_id(self, exchange_order_id: str) -> Order:
        row = await self._fetchrow(
            'SELECT * FROM orders WHERE exchange_order_id = $1', exchange_order_id)
        if row is None:
            raise RecordNotFoundError('order', exchange_order_id)
        return _from_row(Order, row)

    async def get_open_orders(self, symbol: str) -> List[Order]:
        rows = await self._fetch(
            '''SELECT * FROM orders WHERE symbol = $1 AND status IN ('NEW', 'PARTIALLY_FILLED')
               ORDER BY created_at''',
            symbol,
        )
        return [_from_row(Order, r) for r in rows]

    # positions

    async def create_position(self, position: Position) -> Position:
        try:
            row = await self._fetchrow(
                '''INSERT INTO positions (symbol, position_side, size, entry_price, mark_price,
                                          unrealized_pnl, leverage, status, open_time, strategy, notes)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                   RETURNING id''',
                position.symbol, position.position_side, position.size, position.entry_price,
                position.mark_price, position.unrealized_pnl, position.leverage,
                position.status, position.open_time, position.strategy, position.notes,
            )
        except PersistenceError as exc:
            if isinstance(exc.__cause__, asyncpg.UniqueViolationError):
                raise PersistenceError(
                    f"open {position.position_side} position already exists for {position.symbol}"
                ) from exc.__cause__
            raise
        position.id = row['id']
        return position

    async def update_position(self, position: Position) -> None:
        if position.id is None:
            raise RecordNotFoundError('position', position.symbol)
        status = await self._execute(
            '''UPDATE positions SET size = $2, mark_price = $3, unrealized_pnl = $4,
                                    leverage = $5, notes = $6, updated_at = now()
               WHERE id = $1''',
            position.id, position.size, position.mark_price, position.unrealized_pnl,
            position.leverage, position.notes,
        )
        if status.endswith(' 0'):
            raise RecordNotFoundError('position', position.id)

    async def get_position(self, symbol: str, side: str) -> Position:
        row = await self._fetchrow(
            '''SELECT * FROM positions
               WHERE symbol = $1 AND position_side = $2 AND status = $3''',
            symbol, side, PositionStatus.OPEN.value,
        )
        if row is None:
            raise RecordNotFoundError('position', f"{symbol}/{side}")
        return _from_row(Position, row)

    async def get_open_positions(self) -> List[Position]:
        rows = await self._fetch(
            'SELECT * FROM positions WHERE status = $1 ORDER BY open_time',
            PositionStatus.OPEN.value,
        )
        return [_from_row(Position, r) for r in rows]

    async def close_position(self, position_id: int, close_price: float, closed_pnl: float) -> None:
        status = await self._execute(
            '''UPDATE positions SET status = $2, mark_price = $3, closed_pnl = $4,
                                    unrealized_pnl = 0, close_time = $5, updated_at = now()
               WHERE id = $1 AND status = 'OPEN' ''',
            position_id, PositionStatus.CLOSED.value, close_price, closed_pnl,
            datetime.now(timezone.utc),
        )
        if status.endswith(' 0'):
            raise RecordNotFoundError('position', position_id)

    # trades

    async def create_trade(self, trade: Trade) -> Trade:
        row = await self._fetchrow(
            '''INSERT INTO trades (exchange_trade_id, order_id, symbol, side, quantity, price,
                                   quote_qty, commission, commission_asset, realized_pnl,
                                   is_maker, position_side, strategy, trade_time)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
               RETURNING id''',
            trade.exchange_trade_id, trade.order_id, trade.symbol, trade.side,
            trade.quantity, trade.price, trade.quote_qty, trade.commission,
            trade.commission_asset, trade.realized_pnl, trade.is_maker,
            trade.position_side, trade.strategy, trade.trade_time,
        )
        trade.id = row['id']
        return trade

    async def get_trade_history(self, symbol: str, limit: int = 100) -> List[Trade]:
        rows = await self._fetch(
            'SELECT * FROM trades WHERE symbol = $1 ORDER BY trade_time DESC LIMIT $2',
            symbol, limit,
        )
        return [_from_row(Trade, r) for r in rows]

    # account

    async def update_account(self, account: Account) -> Account:
        row = await self._fetchrow(
            '''INSERT INTO accounts (total_wallet_balance, total_unrealized_pnl, total_margin_balance,
                                     total_position_im, total_open_order_im, total_cross_wallet_balance,
                                     available_balance, max_withdraw_amount, can_trade, can_withdraw,
                                     can_deposit, update_time)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
               RETURNING id''',
            account.total_wallet_balance, account.total_unrealized_pnl,
            account.total_margin_balance, account.total_position_im,
            account.total_open_order_im, account.total_cross_wallet_balance,
            account.available_balance, account.max_withdraw_amount,
            account.can_trade, account.can_withdraw, account.can_deposit, account.update_time,
        )
        account.id = row['id']
        return account

    async def get_latest_account(self) -> Account:
        row = await self._fetchrow('SELECT * FROM accounts ORDER BY id DESC LIMIT 1')
        if row is None:
            raise RecordNotFoundError('account', 'latest')
        return _from_row(Account, row)

    # market data

    async def save_market_data(self, record: MarketDataRecord) -> None:
        await self._execute(
            '''INSERT INTO market_data (symbol, price, volume, open, high, low, close, timestamp)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8)''',
            record.symbol, record.price, record.volume, record.open, record.high,
            record.low, record.close, record.timestamp,
        )

    async def get_latest_market_data(self, symbol: str) -> MarketDataRecord:
        row = await self._fetchrow(
            'SELECT * FROM market_data WHERE symbol = $1 ORDER BY timestamp DESC LIMIT 1', symbol)
        if row is None:
            raise RecordNotFoundError('market data', symbol)
        return _from_row(MarketDataRecord, row)

    # risk metrics

    async def save_risk_metric(self, metric: RiskMetric) -> None:
        metric_date = metric.date.date() if isinstance(metric.date, datetime) else metric.date
        await self._execute(
            '''INSERT INTO risk_metrics (date, total_pnl, daily_pnl, max_drawdown, total_trades,
                                         winning_trades, losing_trades, win_rate, var_95, total_exposure)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
               ON CONFLICT (date) DO UPDATE SET
                   total_pnl = EXCLUDED.total_pnl,
                   daily_pnl = EXCLUDED.daily_pnl,
                   max_drawdown = EXCLUDED.max_drawdown,
                   total_trades = EXCLUDED.total_trades,
                   winning_trades = EXCLUDED.winning_trades,
                   losing_trades = EXCLUDED.losing_trades,
                   win_rate = EXCLUDED.win_rate,
                   var_95 = EXCLUDED.var_95,
                   total_exposure = EXCLUDED.total_exposure,
                   updated_at = now()''',
            metric_date, metric.total_pnl, metric.daily_pnl, metric.max_drawdown,
            metric.total_trades, metric.winning_trades, metric.losing_trades,
            metric.win_rate, metric.var_95, metric.total_exposure,
        )

    async def get_latest_risk_metric(self) -> RiskMetric:
        row = await self._fetchrow('SELECT * FROM risk_metrics ORDER BY date DESC LIMIT 1')
        if row is None:
            raise RecordNotFoundError('risk metric', 'latest')
        metric = _from_row(RiskMetric, row)
        if isinstance(metric.date, date) and not isinstance(metric.date, datetime):
            metric.date = datetime.combine(metric.date, datetime.min.time())
        return metric
