import sys

sys.path.insert(0, '.')

import pytest
from prometheus_client import REGISTRY

from api.metrics import metrics


def test_realized_pnl_gauge_tracks_gains_and_losses():
    before = REGISTRY.get_sample_value('pnl_realized') or 0.0

    metrics.record_pnl(12.5)
    metrics.record_pnl(-20.0)

    assert REGISTRY.get_sample_value('pnl_realized') == pytest.approx(before - 7.5)
    assert REGISTRY.get_sample_value('pnl_realized_total') is None
