"""
tests/test_auto_tick.py - Autonomous tick loop: arrivals, budget pacing,
validation, clearing, invariants and determinism.
"""

from dataclasses import replace

import pytest

from creditnet.config import AutoTickOptions, interactive_options
from creditnet.core import INFLIGHT_STATUSES, SimulationState, assert_invariants, validate_state
from creditnet.engine import (
    evaluate_task_output,
    execute_auto_tick,
    sample_arrival_plan,
    sample_processing_delay,
)
from creditnet.factory import build_initial_state, create_agent_state, create_bootstrapped_agent_state, next_agent_id
from creditnet.tutorial import STEP_DEFINITIONS

GUIDE = len(STEP_DEFINITIONS)


def _draws(*values):
    it = iter(values)
    return lambda: next(it)


def _run(state, ticks, options=None, add_nodes_at=()):
    for step in range(1, ticks + 1):
        if step in add_nodes_at:
            aid = next_agent_id(state.agents)
            state = replace(state, agents={**state.agents, aid: create_bootstrapped_agent_state(aid, None, state.agents)})
        state = execute_auto_tick(state, GUIDE + step, options)
    return state


class TestSamplers:
    """Processing delay, validator and arrival sampling."""

    @pytest.mark.parametrize("f,expected", [(0.0, 1), (4.0, 2), (6.0, 3)])
    def test_processing_delay_friction_penalty(self, f, expected):
        agent = replace(create_agent_state("A"), f=f)
        assert sample_processing_delay(agent, _draws(0.0), 1, 3) == expected

    def test_validator_pass(self):
        v = evaluate_task_output(create_agent_state("A"), _draws(0.5, 0.0, 0.99, 0.99), 7)
        assert v.passed and v.reason == "pass"
        assert v.score == 100.0
        assert v.evaluated_tick == 7

    def test_validator_timeout_skips_tool_draw(self):
        v = evaluate_task_output(create_agent_state("A"), _draws(0.5, 0.0, 0.0), 1)
        assert v.timeout and not v.tool_error
        assert v.reason == "timeout"
        assert not v.passed

    def test_validator_low_score(self):
        agent = replace(create_agent_state("A"), s_hat=0.5)
        v = evaluate_task_output(agent, _draws(0.5, 0.0, 0.99, 0.99), 1)
        assert v.score == 50.0
        assert v.reason == "low_score"

    def test_validator_schema_mismatch(self):
        v = evaluate_task_output(create_agent_state("A"), _draws(0.5, 0.999, 0.99, 0.99), 1)
        assert v.reason == "schema_mismatch"

    def test_arrival_plan(self):
        opts = AutoTickOptions()
        assert sample_arrival_plan(_draws(0.0, 0.5), opts) == (2, 0)
        assert sample_arrival_plan(_draws(0.99, 0.1, 0.99), opts) == (7, 4)


class TestBudgetPacing:
    """A starved client skips arrivals instead of overspending."""

    def test_low_balance_skips_every_arrival(self):
        state = execute_auto_tick(build_initial_state(client_balance=100.0, phase=GUIDE), GUIDE + 1)
        stats = state.last_tick_stats
        assert stats.arrivals >= 2
        assert stats.budget_skipped == stats.arrivals
        assert stats.dispatched == 0
        assert f"budgetSkipped={stats.arrivals}" in state.last_narrative
        assert state.client_balance == 100.0
        assert state.tasks == []

    def test_small_budget_drains_over_fifty_ticks(self):
        state = build_initial_state(client_balance=1000.0, phase=GUIDE)
        opts = AutoTickOptions(max_payment_ratio=1.0)
        skipped_per_tick = []
        for step in range(1, 51):
            state = execute_auto_tick(state, GUIDE + step, opts)
            issues = validate_state(state)
            assert issues == [], f"tick {step}: {issues}"
            assert state.client_balance >= 0.0
            skipped_per_tick.append(state.last_tick_stats.budget_skipped)
        assert len(state.agents) == 3
        assert state.client_balance < 250.0
        assert any(t.status == "COMMITTED" for t in state.tasks)
        assert sum(skipped_per_tick[25:]) > 0
        assert sum(t.payment for t in state.tasks) == pytest.approx(1000.0 - state.client_balance)

    def test_isolated_network_skips_for_capacity(self):
        state = build_initial_state(phase=GUIDE)
        state = replace(state, agents={aid: replace(a, status="isolated") for aid, a in state.agents.items()})
        stats = execute_auto_tick(state, GUIDE + 1).last_tick_stats
        assert stats.capacity_skipped == stats.arrivals
        assert stats.budget_skipped == 0

    def test_refill_on_clearing_tick(self):
        opts = AutoTickOptions(clear_every=1, budget_refill_threshold=5000.0)
        state = execute_auto_tick(build_initial_state(client_balance=100.0, phase=GUIDE), GUIDE + 1, opts)
        assert state.client_balance == pytest.approx(5000.0)
        assert "BUDGET_REFILL +4900" in state.last_narrative

    def test_no_refill_between_clearings(self):
        opts = AutoTickOptions(clear_every=5, budget_refill_threshold=5000.0)
        state = execute_auto_tick(build_initial_state(client_balance=100.0, phase=GUIDE), 1, opts)
        assert state.client_balance == 100.0


class TestTickMechanics:
    """Clock, healing and the dispatch path."""

    def test_clock_advances(self):
        state = execute_auto_tick(build_initial_state(phase=GUIDE), GUIDE + 1)
        assert state.tick == 1
        assert state.phase == GUIDE + 1
        assert state.last_narrative.startswith("AUTO TICK 1:")

    def test_arrivals_are_dispatched(self):
        state = execute_auto_tick(build_initial_state(phase=GUIDE), GUIDE + 1, interactive_options())
        stats = state.last_tick_stats
        assert stats.dispatched == stats.arrivals
        dispatched = [t for t in state.tasks if t.status == "DISPATCH"]
        assert len(dispatched) == stats.dispatched
        for t in dispatched:
            assert t.id.startswith("auto-1-")
            assert t.reserved
            assert t.dispatch_tick == 1
            assert t.ready_tick >= 2

    def test_isolated_agent_heals(self):
        state = build_initial_state(phase=GUIDE)
        sick = replace(state.agents["A"], status="isolated", f=3.0)
        state = replace(state, agents={**state.agents, "A": sick})
        state = execute_auto_tick(state, GUIDE + 1, AutoTickOptions(suspend_arrivals=True))
        assert state.agents["A"].status == "idle"
        assert state.agents["A"].f == pytest.approx(3.0 * 0.94)

    def test_empty_network_is_noop(self):
        state = SimulationState(agents={})
        assert execute_auto_tick(state, 1) is state


class TestLongRun:
    """Invariants hold over many ticks, with nodes joining mid-run."""

    def test_invariants_every_tick(self):
        state = build_initial_state(phase=GUIDE)
        opts = interactive_options()
        for step in range(1, 121):
            if step in (20, 40, 60):
                aid = next_agent_id(state.agents)
                state = replace(state, agents={**state.agents,
                                               aid: create_bootstrapped_agent_state(aid, None, state.agents)})
            state = execute_auto_tick(state, GUIDE + step, opts)
            issues = validate_state(state)
            assert issues == [], f"step {step}: {issues}"
        assert len(state.agents) == 6
        assert any(t.status == "COMMITTED" for t in state.tasks)
        assert state.tick == 120

    def test_drain_empties_inflight(self):
        state = _run(build_initial_state(phase=GUIDE), 40, interactive_options())
        drain = replace(interactive_options(), suspend_arrivals=True)
        for step in range(41, 101):
            if not any(t.status in INFLIGHT_STATUSES for t in state.tasks):
                break
            state = execute_auto_tick(state, GUIDE + step, drain)
        assert not any(t.status in INFLIGHT_STATUSES for t in state.tasks)
        assert_invariants(state)
        for aid, agent in state.agents.items():
            assert agent.active_tasks == 0, f"{aid} still holds slots"
            assert agent.reserved_quota == pytest.approx(0.0, abs=1e-9)

    def test_reserved_tasks_match_agent_slots(self):
        state = _run(build_initial_state(phase=GUIDE), 60, interactive_options(), add_nodes_at=(15,))
        for aid, agent in state.agents.items():
            held = [t for t in state.tasks if t.reserved and t.assigned_to == aid]
            assert agent.active_tasks == len(held), aid
            assert agent.reserved_quota == pytest.approx(sum(t.delta for t in held))


class TestDeterminism:
    """Same seed, same run."""

    def test_same_seed_same_state(self):
        a = _run(build_initial_state(seed=99, phase=GUIDE), 40, interactive_options(), add_nodes_at=(10,))
        b = _run(build_initial_state(seed=99, phase=GUIDE), 40, interactive_options(), add_nodes_at=(10,))
        assert a.to_dict() == b.to_dict()

    def test_different_seed_diverges(self):
        a = _run(build_initial_state(seed=1, phase=GUIDE), 30)
        b = _run(build_initial_state(seed=2, phase=GUIDE), 30)
        assert a.to_dict() != b.to_dict()

    def test_snapshot_round_trip(self):
        state = _run(build_initial_state(phase=GUIDE), 25, interactive_options())
        restored = SimulationState.from_dict(state.to_dict())
        assert restored == state
        nxt_a = execute_auto_tick(state, GUIDE + 26, interactive_options())
        nxt_b = execute_auto_tick(restored, GUIDE + 26, interactive_options())
        assert nxt_a.to_dict() == nxt_b.to_dict()
