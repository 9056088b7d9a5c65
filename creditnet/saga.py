"""
Task state machine and the ABORT/COMPENSATE saga.

Happy path:   INIT -> RESERVE -> DISPATCH -> VALIDATE -> COMMIT -> COMMITTED
Failure path: {RESERVE | DISPATCH | VALIDATE} -> ABORT -> COMPENSATE -> ABORTED

Only the forward edges below are legal. Multi-step requests (e.g. "commit
this validated task") walk the intermediate states rather than jumping.
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from .amm import release, sync_agent_y
from .core import AgentState, SCORE_MIN, Task, TaskStatus
from .hooks import apply_friction_penalty

VALID_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "INIT": ("RESERVE",),
    "RESERVE": ("DISPATCH", "ABORT"),
    "DISPATCH": ("VALIDATE", "ABORT"),
    "VALIDATE": ("COMMIT", "ABORT"),
    "COMMIT": ("COMMITTED",),
    "COMMITTED": (),
    "ABORT": ("COMPENSATE",),
    "COMPENSATE": ("ABORTED",),
    "ABORTED": (),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)

SCORE_ABORT_STEP = 0.08


class InvalidTransitionError(ValueError):
    pass


def transition_path(current: str, target: str) -> Optional[List[str]]:
    """
    Shortest legal walk from ``current`` to ``target``, excluding ``current``.
    Returns [] when already there and None when ``target`` is unreachable.
    """
    if current == target:
        return []
    parent: Dict[str, str] = {}
    q = deque([current])
    visited = {current}
    while q:
        status = q.popleft()
        for nxt in VALID_TRANSITIONS.get(status, ()):
            if nxt in visited:
                continue
            parent[nxt] = status
            if nxt == target:
                path = [nxt]
                while path[-1] in parent and parent[path[-1]] != current:
                    path.append(parent[path[-1]])
                path.reverse()
                return path
            visited.add(nxt)
            q.append(nxt)
    return None


def can_reach(current: str, target: str) -> bool:
    return transition_path(current, target) is not None


def transition_task(task: Task, new_status: TaskStatus) -> Task:
    """Single edge move; raises on anything the table does not allow."""
    if new_status not in VALID_TRANSITIONS.get(task.status, ()):
        raise InvalidTransitionError(f"{task.id}: {task.status} -> {new_status} is not a legal transition")
    return replace(task, status=new_status)


def advance_task(task: Task, target: TaskStatus) -> Task:
    path = transition_path(task.status, target)
    if path is None:
        raise InvalidTransitionError(f"{task.id}: {task.status} cannot reach {target}")
    for status in path:
        task = transition_task(task, status)
    return task


@dataclass(frozen=True)
class SagaResult:
    agent: AgentState
    task: Task
    compensated: bool
    refund_amount: float


def saga_abort(agent: AgentState, task: Task, friction_penalty: float = 2.0) -> SagaResult:
    """
    Roll back a failed task: free its reservation, count the failure, raise
    friction, lower the score and refund whatever the client already paid.
    Agents whose balance-to-quota ratio is under their liquidation ratio are
    isolated instead of merely failed.
    """
    failed = replace(agent, total_failed=agent.total_failed + 1, status="failed")
    if task.reserved:
        released = release(failed, task.delta, "idle")
    else:
        released = sync_agent_y(replace(failed, status="idle" if failed.active_tasks == 0 else "executing"))

    penalized = apply_friction_penalty(released, friction_penalty)
    health_ratio = penalized.balance / max(penalized.quota, 1.0)
    next_agent = replace(
        penalized,
        s_hat=max(released.s_hat - SCORE_ABORT_STEP, SCORE_MIN),
        status="isolated" if health_ratio < released.liquidation_ratio else released.status,
    )
    next_task = replace(advance_task(task, "ABORTED"), reserved=False)
    return SagaResult(
        agent=next_agent,
        task=next_task,
        compensated=True,
        refund_amount=max(0.0, task.payment),
    )


def state_machine_states() -> List[Tuple[str, str, bool]]:
    """(status, label, is_terminal) in display order."""
    labels = {
        "INIT": "Initialized",
        "RESERVE": "Capacity frozen",
        "DISPATCH": "Dispatched",
        "VALIDATE": "Validating",
        "COMMIT": "Committing",
        "COMMITTED": "Committed",
        "ABORT": "Aborting",
        "COMPENSATE": "Compensating",
        "ABORTED": "Aborted",
    }
    return [(status, labels[status], status in TERMINAL_STATUSES) for status in VALID_TRANSITIONS]
