"""
Per-agent AMM capacity curve.

Each agent prices capacity on the constant-product style curve P = k / y**2,
where y is the free part of its quota. Acquiring dy units costs
dx = k / (y - dy) - k / y, and the effective quote folds in friction and
score: P_eff = dx * (1 + f) / s_hat.

State transitions return new ``AgentState`` values; callers own the swap.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple
import math

import numpy as np

from .core import AgentState, AgentStatus

MIN_SCORE = 0.01
MIN_Y = 1e-6


def sync_agent_y(agent: AgentState) -> AgentState:
    """Re-derive the shadow pool size from quota bookkeeping."""
    y = max(1.0, max(0.0, agent.quota - agent.reserved_quota))
    if y == agent.y:
        return agent
    return replace(agent, y=y)


def get_base_price(agent: AgentState) -> float:
    if agent.y <= MIN_Y:
        return math.inf
    return agent.k / (agent.y * agent.y)


def get_delta_x(agent: AgentState, delta_y: float) -> float:
    if delta_y <= 0:
        return 0.0
    y = max(agent.y, MIN_Y)
    y_after = y - delta_y
    if y_after <= MIN_Y:
        return math.inf
    return (agent.k / y_after) - (agent.k / y)


def get_effective_price(agent: AgentState, delta_y: float = 1.0) -> float:
    delta_x = get_delta_x(agent, delta_y)
    if not math.isfinite(delta_x):
        return math.inf
    return delta_x * (1.0 + agent.f) / max(agent.s_hat, MIN_SCORE)


@dataclass(frozen=True)
class ReserveResult:
    agent: AgentState
    ok: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class CommitResult:
    agent: AgentState
    burn_amount: float
    net_payment: float


def reserve(agent: AgentState, delta: float) -> ReserveResult:
    """Freeze capacity for one task. Payment is settled later, at commit."""
    delta = max(0.0, delta)
    if agent.active_tasks >= agent.capacity:
        return ReserveResult(agent=replace(agent, status="overloaded"), ok=False, reason="capacity exhausted")
    if agent.free_quota <= delta:
        return ReserveResult(agent=replace(agent, status="overloaded"), ok=False, reason="quota exhausted")

    updated = replace(
        agent,
        reserved_quota=agent.reserved_quota + delta,
        active_tasks=agent.active_tasks + 1,
        status="executing",
    )
    return ReserveResult(agent=sync_agent_y(updated), ok=True)


def release(agent: AgentState, delta: float, preferred_status: AgentStatus = "idle") -> AgentState:
    """Give back a reservation. Remaining active tasks keep the agent executing."""
    delta = max(0.0, delta)
    next_active = max(0, agent.active_tasks - 1)
    next_reserved = max(0.0, agent.reserved_quota - delta)
    return sync_agent_y(replace(
        agent,
        reserved_quota=next_reserved,
        active_tasks=next_active,
        status=preferred_status if next_active == 0 else "executing",
    ))


def commit(agent: AgentState, delta: float, payment: float, burn_rate: float) -> CommitResult:
    """
    Settle a finished task: release its reservation, leave the quota envelope
    untouched and credit the payment net of the burn.
    """
    delta = max(0.0, delta)
    payment = max(0.0, payment)
    burn_amount = payment * min(max(burn_rate, 0.0), 1.0)
    net_payment = payment - burn_amount

    next_active = max(0, agent.active_tasks - 1)
    settled = replace(
        agent,
        reserved_quota=max(0.0, agent.reserved_quota - delta),
        active_tasks=next_active,
        total_completed=agent.total_completed + 1,
        status="idle" if next_active == 0 else "executing",
        trade_balance=agent.trade_balance + net_payment,
        balance=agent.balance + net_payment,
    )
    return CommitResult(agent=sync_agent_y(settled), burn_amount=burn_amount, net_payment=net_payment)


def price_curve_points(k: float, y_min: float, y_max: float, steps: int = 100) -> List[Tuple[float, float]]:
    ys = np.linspace(y_min, y_max, steps + 1)
    ys = ys[ys > 0]
    return [(float(y), float(k / (y * y))) for y in ys]
