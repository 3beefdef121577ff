import re
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, '.')

from orchestration.engine import TradeStats


SCHEMA = Path(__file__).resolve().parent.parent / 'migrations' / '001_initial_schema.sql'


def column_type(table, column):
    sql = SCHEMA.read_text()
    block = re.search(r'CREATE TABLE IF NOT EXISTS %s \((.*?)\n\);' % table, sql, re.S).group(1)
    match = re.search(r'^\s*%s\s+NUMERIC\((\d+),\s*(\d+)\)' % column, block, re.M)
    return int(match.group(1)), int(match.group(2))


def test_drawdown_column_holds_quote_amounts():
    stats = TradeStats()
    stats.record_close(-250000.0, date(2024, 3, 10))

    precision, scale = column_type('risk_metrics', 'max_drawdown')
    assert stats.max_drawdown == 250000.0
    assert 10 ** (precision - scale) > stats.max_drawdown
    assert (precision, scale) == column_type('risk_metrics', 'total_pnl')
