"""
tests/test_saga.py - Task state machine and compensation.
"""

from dataclasses import replace

import pytest

from creditnet.amm import reserve, sync_agent_y
from creditnet.core import Task
from creditnet.factory import create_agent_state
from creditnet.saga import (
    InvalidTransitionError,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    advance_task,
    can_reach,
    saga_abort,
    state_machine_states,
    transition_path,
    transition_task,
)


class TestTransitionTable:
    """Tests for legal transitions and path finding."""

    def test_terminal_states(self):
        assert TERMINAL_STATUSES == {"COMMITTED", "ABORTED"}

    def test_happy_path(self):
        assert transition_path("INIT", "COMMITTED") == ["RESERVE", "DISPATCH", "VALIDATE", "COMMIT", "COMMITTED"]

    def test_single_edge(self):
        assert transition_path("RESERVE", "DISPATCH") == ["DISPATCH"]

    def test_same_status_is_empty_path(self):
        assert transition_path("ABORT", "ABORT") == []

    def test_compensation_path(self):
        assert transition_path("VALIDATE", "ABORTED") == ["ABORT", "COMPENSATE", "ABORTED"]

    def test_terminal_states_are_final(self):
        for status in TERMINAL_STATUSES:
            for target in VALID_TRANSITIONS:
                if target != status:
                    assert not can_reach(status, target), f"{status} -> {target} must be impossible"

    def test_no_commit_after_abort(self):
        assert transition_path("ABORT", "COMMITTED") is None

    def test_transition_task_rejects_jump(self):
        task = Task(id="t", assigned_to="A")
        with pytest.raises(InvalidTransitionError):
            transition_task(task, "COMMIT")

    def test_advance_task_walks_path(self):
        task = Task(id="t", assigned_to="A", status="DISPATCH")
        assert advance_task(task, "COMMITTED").status == "COMMITTED"

    def test_advance_task_unreachable_raises(self):
        task = Task(id="t", assigned_to="A", status="COMMITTED")
        with pytest.raises(InvalidTransitionError):
            advance_task(task, "ABORT")

    def test_state_machine_listing(self):
        rows = state_machine_states()
        assert [r[0] for r in rows] == list(VALID_TRANSITIONS)
        assert dict((r[0], r[2]) for r in rows)["ABORTED"] is True


class TestSagaAbort:
    """Tests for saga_abort compensation."""

    def _reserved(self):
        agent = reserve(create_agent_state("B"), 100).agent
        task = Task(id="task-1", assigned_to="B", status="DISPATCH", delta=100, reserved=True)
        return agent, task

    def test_releases_reservation_and_penalizes(self):
        agent, task = self._reserved()
        result = saga_abort(agent, task, friction_penalty=0.8)
        assert result.compensated
        assert result.agent.reserved_quota == 0
        assert result.agent.active_tasks == 0
        assert result.agent.y == 1000
        assert result.agent.total_failed == 1
        assert result.agent.f == pytest.approx(0.8)
        assert result.agent.s_hat == pytest.approx(0.92)
        assert result.agent.status == "idle"
        assert result.task.status == "ABORTED"
        assert result.task.reserved is False

    def test_default_penalty(self):
        agent, task = self._reserved()
        assert saga_abort(agent, task).agent.f == pytest.approx(2.0)

    def test_refunds_paid_amount(self):
        agent, task = self._reserved()
        result = saga_abort(agent, replace(task, payment=42.0))
        assert result.refund_amount == 42.0

    def test_unreserved_task_does_not_release_other_slot(self):
        """A task that never held capacity cannot free another task's reservation."""
        agent = reserve(create_agent_state("B"), 100).agent
        orphan = Task(id="task-x", assigned_to="B", status="DISPATCH", delta=100, reserved=False)
        result = saga_abort(agent, orphan)
        assert result.agent.reserved_quota == 100
        assert result.agent.active_tasks == 1
        assert result.agent.status == "executing"

    def test_unhealthy_agent_is_isolated(self):
        agent, task = self._reserved()
        broke = sync_agent_y(replace(agent, balance=-500.0))
        assert saga_abort(broke, task).agent.status == "isolated"
