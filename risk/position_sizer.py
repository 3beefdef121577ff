import logging

logger = logging.getLogger(__name__)


LONG_SIDES = ('BUY', 'LONG')


def is_long(side: str) -> bool:
    return (side or '').upper() in LONG_SIDES


class PositionSizer:
    """Stop, target and size calculations driven by percentage limits."""

    def __init__(self, stop_loss_percent: float, take_profit_percent: float,
                 risk_per_trade_percent: float, max_position_size: float):
        self.stop_loss_percent = stop_loss_percent
        self.take_profit_percent = take_profit_percent
        self.risk_per_trade_percent = risk_per_trade_percent
        self.max_position_size = max_position_size

    def calculate_stop_loss(self, entry_price: float, side: str) -> float:
        stop_loss_pct = self.stop_loss_percent / 100.0
        if is_long(side):
            return entry_price * (1.0 - stop_loss_pct)
        return entry_price * (1.0 + stop_loss_pct)

    def calculate_take_profit(self, entry_price: float, side: str) -> float:
        take_profit_pct = self.take_profit_percent / 100.0
        if is_long(side):
            return entry_price * (1.0 + take_profit_pct)
        return entry_price * (1.0 - take_profit_pct)

    def calculate_position_size(self, account_balance: float, entry_price: float,
                                stop_loss: float) -> float:
        """Quantity risking ``risk_per_trade_percent`` of the balance at the given stop.

        Capped at ``max_position_size`` notional. Returns 0 for a zero stop distance.
        """
        if entry_price <= 0:
            return 0.0
        stop_distance = abs(entry_price - stop_loss) / entry_price
        if stop_distance == 0:
            logger.debug("Zero stop distance at entry %.4f, no size", entry_price)
            return 0.0

        risk_amount = account_balance * (self.risk_per_trade_percent / 100.0)
        quantity = risk_amount / stop_distance / entry_price

        max_quantity = self.max_position_size / entry_price
        return min(quantity, max_quantity)
