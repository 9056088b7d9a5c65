"""
tests/test_metrics.py - Route concentration and the pandas metrics store.
"""

import pytest

from creditnet.config import interactive_options
from creditnet.core import LedgerEntry
from creditnet.engine import execute_auto_tick
from creditnet.factory import build_initial_state
from creditnet.metrics import MetricsStore, agent_rows, network_row, route_concentration


def _entry(agent_id, action="ROUTE"):
    return LedgerEntry(
        step=1, agent_id=agent_id, action=action, delta_y=0.0, y_before=1000.0, y_after=1000.0,
        price_before=100.0, price_after=100.0, f_before=0.0, f_after=0.0, description="",
    )


class TestRouteConcentration:
    """Tests for route_concentration."""

    def test_empty(self):
        assert route_concentration([]) == (0.0, 0.0, 0)

    def test_shares(self):
        ledger = [_entry("A"), _entry("A"), _entry("B"), _entry("C"), _entry("A", "COMMIT")]
        top1, hhi, nodes = route_concentration(ledger)
        assert top1 == pytest.approx(0.5)
        assert hhi == pytest.approx(0.25 + 0.0625 + 0.0625)
        assert nodes == 3

    def test_monopoly(self):
        assert route_concentration([_entry("A")] * 4) == (1.0, 1.0, 1)


class TestRows:
    """Tests for row builders."""

    def test_network_row_initial(self):
        row = network_row(build_initial_state())
        assert row["agents"] == 3
        assert row["inflight"] == 0
        assert row["routes"] == 0
        assert row["hhi"] == 0.0
        assert "arrivals" not in row

    def test_network_row_carries_tick_stats(self):
        state = execute_auto_tick(build_initial_state(phase=6), 7, interactive_options())
        row = network_row(state)
        assert row["arrivals"] == state.last_tick_stats.arrivals
        assert row["inflight"] == state.last_tick_stats.dispatched
        assert row["routes"] == state.last_tick_stats.dispatched

    def test_agent_rows(self):
        rows = agent_rows(build_initial_state())
        assert [r["agent_id"] for r in rows] == ["A", "B", "C"]
        assert rows[0]["base_price"] == pytest.approx(100.0)


class TestMetricsStore:
    """Tests for MetricsStore frames."""

    def test_record_builds_frames(self):
        store = MetricsStore()
        state = build_initial_state(phase=6)
        store.record(state)
        for step in range(7, 12):
            state = execute_auto_tick(state, step, interactive_options())
            store.record(state)
        net = store.network_df()
        agents = store.agent_df()
        assert list(net["tick"]) == [0, 1, 2, 3, 4, 5]
        assert {"client_balance", "top1_share", "hhi", "committed"} <= set(net.columns)
        assert len(agents) == 6 * 3
        assert set(agents["agent_id"]) == {"A", "B", "C"}

    def test_empty_store(self):
        store = MetricsStore()
        assert store.network_df().empty
        assert store.agent_df().empty

    def test_truncate_after(self):
        store = MetricsStore()
        state = build_initial_state(phase=6)
        store.record(state)
        for step in range(7, 10):
            state = execute_auto_tick(state, step, interactive_options())
            store.record(state)
        store.truncate_after(7)
        assert list(store.network_df()["phase"]) == [6, 7]
        assert set(store.agent_df()["phase"]) == {6, 7}
        assert store.has_phase(7)
        assert not store.has_phase(8)
