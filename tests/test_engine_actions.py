"""
tests/test_engine_actions.py - Action executor, guided script and clearing.
"""

from dataclasses import replace

import pytest

from creditnet.config import ClearingParams
from creditnet.core import (
    AbortAction,
    BackpressureAction,
    BancorSettleAction,
    CommitAction,
    ComparePricesAction,
    CompensateAction,
    DispatchAction,
    OverflowAction,
    ReserveAction,
    RouteAction,
    ValidateAction,
    assert_invariants,
)
from creditnet.engine import apply_periodic_clearing, execute_action, execute_step
from creditnet.factory import build_initial_state
from creditnet.tutorial import STEP_DEFINITIONS

FRESH_QUOTE_100 = (1e8 / 900 - 1e8 / 1000) * 2.4


def _replay(n, state=None):
    state = state or build_initial_state()
    for idx in range(n):
        state = execute_step(state, STEP_DEFINITIONS[idx].actions, idx + 1)
    return state


def _task(state, task_id):
    task = state.find_task(task_id)
    assert task is not None, f"{task_id} missing"
    return task


class TestRouting:
    """Quote comparison and routing through the executor."""

    def test_compare_prices_cold_start(self):
        state = execute_action(build_initial_state(), ComparePricesAction(delta=100, candidates=["A", "B", "C"]), 1).state
        assert state.price_comparison == {
            "A": pytest.approx(FRESH_QUOTE_100),
            "B": pytest.approx(FRESH_QUOTE_100),
            "C": pytest.approx(FRESH_QUOTE_100),
        }
        assert "best quote" in state.last_narrative

    def test_route_creates_task_and_ledger_entry(self):
        initial = build_initial_state()
        result = execute_action(initial, RouteAction(task_id="task-1", delta=100, candidates=["A", "B", "C"]), 1)
        task = _task(result.state, "task-1")
        assert task.status == "INIT"
        assert task.assigned_to in {"A", "B", "C"}
        assert task.effective_price == pytest.approx(FRESH_QUOTE_100)
        assert task.quoted_price == pytest.approx(FRESH_QUOTE_100 / 2.4)
        assert [e.action for e in result.entries] == ["ROUTE"]
        assert result.state.rng_state != initial.rng_state

    def test_input_state_untouched(self):
        initial = build_initial_state()
        before = initial.to_dict()
        execute_step(initial, STEP_DEFINITIONS[0].actions, 1)
        assert initial.to_dict() == before

    def test_route_does_not_reopen_settled_task(self):
        state = _replay(4)
        settled = _task(state, "task-2")
        assert settled.status == "COMMITTED"
        result = execute_action(state, RouteAction(task_id="task-2", delta=100, candidates=["C"]), 5)
        assert _task(result.state, "task-2") == settled
        assert result.entries == []
        assert result.state.rng_state == state.rng_state
        assert "rejected" in result.state.last_narrative

    def test_reroute_of_unreserved_task(self):
        state = execute_action(build_initial_state(), RouteAction(task_id="t", delta=100, candidates=["A"]), 1).state
        state = execute_action(state, RouteAction(task_id="t", delta=100, candidates=["B"]), 1).state
        assert [t.id for t in state.tasks] == ["t"]
        assert _task(state, "t").assigned_to == "B"

    def test_unknown_action(self):
        with pytest.raises(TypeError):
            execute_action(build_initial_state(), object(), 1)


class TestFailureRollback:
    """Failure on B is compensated and priced in."""

    def test_compensation_releases_and_penalizes(self):
        state = _replay(2)
        b = state.agents["B"]
        assert _task(state, "task-1").status == "ABORTED"
        assert b.reserved_quota == 0 and b.active_tasks == 0 and b.y == 1000
        assert b.f == pytest.approx(0.8)
        assert b.s_hat == pytest.approx(0.92)
        assert b.total_failed == 1
        assert b.status == "idle"
        compensation = state.ledger[-1]
        assert compensation.action == "ABORT"
        assert compensation.delta_y == pytest.approx(100.0)

    def test_failed_agent_quotes_higher(self):
        state = _replay(2)
        state = execute_action(state, ComparePricesAction(delta=100), 3).state
        assert state.price_comparison["B"] > state.price_comparison["A"]

    def test_dispatch_on_aborted_task_rejected(self):
        state = _replay(2)
        after = execute_action(state, DispatchAction(task_id="task-1", agent_id="B"), 3).state
        assert _task(after, "task-1").status == "ABORTED"
        assert "rejected" in after.last_narrative

    def test_compensation_targets_assignee(self):
        state = build_initial_state()
        state = execute_step(state, [
            RouteAction(task_id="t", delta=100, candidates=["A"]),
            ReserveAction(task_id="t", agent_id="A", delta=100),
            AbortAction(task_id="t", agent_id="A"),
            CompensateAction(task_id="t", agent_id="B", delta=100),
        ], 1)
        task = _task(state, "t")
        a = state.agents["A"]
        assert task.status == "ABORTED" and not task.reserved
        assert a.reserved_quota == 0 and a.active_tasks == 0
        assert a.total_failed == 1
        assert state.agents["B"] == build_initial_state().agents["B"]
        assert state.ledger[-1].agent_id == "A"
        assert_invariants(state)

    def test_reserve_only_from_init(self):
        state = _replay(1)
        after = execute_action(state, ReserveAction(task_id="task-1", agent_id="B", delta=100), 2).state
        assert after.agents["B"].reserved_quota == 100
        assert after.agents["B"].active_tasks == 1
        assert "rejected" in after.last_narrative


class TestCommitSettlement:
    """COMMIT charges the client and credits the agent net of burn."""

    def _validated(self, payment=500.0, client_balance=None):
        state = _replay(3)
        state = replace(state, tasks=[
            replace(t, effective_price=payment) if t.id == "task-2" else t for t in state.tasks
        ])
        if client_balance is not None:
            state = replace(state, client_balance=client_balance)
        return execute_action(state, ValidateAction(task_id="task-2", agent_id="A"), 4).state

    def test_commit(self):
        state = self._validated()
        result = execute_action(state, CommitAction(task_id="task-2", agent_id="A", burn_rate=0.01), 4)
        a = result.state.agents["A"]
        task = _task(result.state, "task-2")
        assert [e.action for e in result.entries] == ["COMMIT", "BURN"]
        assert result.entries[0].delta_balance == pytest.approx(495.0)
        assert result.entries[1].delta_balance == pytest.approx(-5.0)
        assert result.state.client_balance == pytest.approx(state.client_balance - 500.0)
        assert a.balance == pytest.approx(10_495.0)
        assert a.reserved_quota == 0 and a.active_tasks == 0
        assert a.total_completed == 1
        assert a.s_hat == pytest.approx(1.035)
        assert task.status == "COMMITTED"
        assert task.payment == pytest.approx(500.0)
        assert task.burn == pytest.approx(5.0)
        assert task.reserved is False

    def test_commit_without_budget_aborts(self):
        state = self._validated(client_balance=100.0)
        result = execute_action(state, CommitAction(task_id="task-2", agent_id="A", burn_rate=0.01), 4)
        task = _task(result.state, "task-2")
        assert result.entries == []
        assert task.status == "ABORT"
        assert task.reserved, "reservation is released by the compensation, not by the failed commit"
        assert result.state.client_balance == 100.0
        assert result.state.agents["A"].reserved_quota == 100

    def test_commit_without_reservation_rejected(self):
        state = execute_action(build_initial_state(), RouteAction(task_id="t", delta=100, target="A"), 1).state
        result = execute_action(state, CommitAction(task_id="t", agent_id="A"), 1)
        assert _task(result.state, "t").status == "INIT"
        assert result.entries == []
        assert "rejected" in result.state.last_narrative


class TestBackpressureOverflow:
    """Saturation and spill-over."""

    def test_sixth_reservation_refused(self):
        result = execute_action(build_initial_state(), BackpressureAction(agent_id="A", count=6, delta=100), 5)
        a = result.state.agents["A"]
        assert "capacity exhausted" in result.state.last_narrative
        assert a.active_tasks == 5
        assert a.reserved_quota == 500
        assert a.status == "overloaded"
        statuses = [_task(result.state, f"task-bp-{i}").status for i in range(1, 7)]
        assert statuses == ["DISPATCH"] * 5 + ["ABORT"]
        assert [e.action for e in result.entries] == ["RESERVE"] * 5

    def test_overflow_reserves_on_target(self):
        result = execute_action(
            build_initial_state(), OverflowAction(from_agent="A", to_agent="C", task_id="task-7", delta=100), 5)
        task = _task(result.state, "task-7")
        assert task.assigned_to == "C"
        assert task.status == "RESERVE" and task.reserved
        assert result.state.agents["C"].reserved_quota == 100
        assert [e.action for e in result.entries] == ["RESERVE"]
        assert set(result.state.price_comparison) == {"C"}

    def test_overflow_to_saturated_target(self):
        state = build_initial_state()
        state = replace(state, agents={**state.agents, "C": replace(state.agents["C"], active_tasks=5)})
        result = execute_action(state, OverflowAction(from_agent="A", to_agent="C", task_id="task-7", delta=100), 5)
        assert _task(result.state, "task-7").status == "ABORT"
        assert [e.action for e in result.entries] == ["RESERVE"]
        assert result.entries[0].agent_id == "C"
        assert result.entries[0].delta_y == 0.0
        assert result.state.agents["C"].status == "overloaded"


class TestClearing:
    """Manual and periodic Bancor settlement."""

    def test_manual_tax(self):
        result = execute_action(build_initial_state(), BancorSettleAction(agent_id="A", amount=8, action_type="TAX"), 6)
        a = result.state.agents["A"]
        assert a.balance == pytest.approx(9992.0)
        assert a.trade_balance == pytest.approx(-8.0)
        assert result.entries[0].action == "BANCOR_TAX"

    def test_periodic_clearing_taxes_surplus(self):
        state = build_initial_state()
        state = replace(state, agents={**state.agents, "A": replace(state.agents["A"], trade_balance=4500.0)})
        cleared = apply_periodic_clearing(state, 10, ClearingParams(threshold=2000.0))
        assert len(cleared.ledger) == 1
        entry = cleared.ledger[0]
        assert (entry.agent_id, entry.action, entry.step) == ("A", "BANCOR_TAX", 10)
        assert entry.delta_balance == pytest.approx(-8.0)
        assert cleared.last_narrative == "Periodic clearing -> A:TAX"
        assert cleared.agents["B"] == state.agents["B"]

    def test_periodic_clearing_liquidation_entry(self):
        state = build_initial_state()
        broke = replace(state.agents["A"], balance=-5000.0, total_failed=6)
        state = replace(state, agents={**state.agents, "A": broke})
        cleared = apply_periodic_clearing(state, 5)
        entry = [e for e in cleared.ledger if e.agent_id == "A"][0]
        assert entry.action == "LIQUIDATE"
        assert entry.delta_quota == pytest.approx(-100.0)
        assert cleared.agents["A"].status == "isolated"


class TestGuidedScript:
    """The six scripted steps replayed end to end."""

    def test_full_replay(self):
        state = _replay(len(STEP_DEFINITIONS))
        assert_invariants(state)
        assert _task(state, "task-1").status == "ABORTED"
        assert _task(state, "task-2").status == "COMMITTED"
        assert [_task(state, f"task-bp-{i}").status for i in range(1, 5)] == ["DISPATCH"] * 4
        task7 = _task(state, "task-7")
        assert task7.assigned_to == "C" and task7.status == "RESERVE"
        assert state.agents["A"].status == "overloaded"
        assert state.agents["B"].balance == pytest.approx(10_000.0 - 1.2)
        assert state.agents["A"].balance == pytest.approx(10_000.0 + FRESH_QUOTE_100 * 0.99 - 8.0)
        assert state.client_balance == pytest.approx(80_000.0 - FRESH_QUOTE_100)
