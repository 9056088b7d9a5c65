from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional

from .core import (
    BackpressureAction,
    BancorSettleAction,
    CommitAction,
    ComparePricesAction,
    CompensateAction,
    DispatchAction,
    FailAction,
    AbortAction,
    OverflowAction,
    ReserveAction,
    RouteAction,
    StepAction,
    ValidateAction,
)


@dataclass(frozen=True)
class StepDefinition:
    id: int
    title: str
    subtitle: str
    narrative: str
    formula: Optional[str] = None
    actions: List[StepAction] = field(default_factory=list)


STEP_DEFINITIONS: List[StepDefinition] = [
    StepDefinition(
        id=1,
        title="Cold-start routing",
        subtitle="Router compares live quotes and assigns the task",
        narrative=(
            "The gateway quotes all three nodes with dx = k/(y-dy) - k/y, ranks them by "
            "P_eff = dx*(1+f)/s_hat and freezes capacity on the chosen node."
        ),
        formula=r"\Delta x = \frac{k}{y-\Delta y} - \frac{k}{y},\quad P_{eff}=\Delta x\cdot\frac{1+f}{\hat{s}}",
        actions=[
            ComparePricesAction(candidates=["A", "B", "C"], delta=100),
            RouteAction(task_id="task-1", delta=100, candidates=["B"]),
            ReserveAction(task_id="task-1", agent_id="B", delta=100),
            DispatchAction(task_id="task-1", agent_id="B"),
        ],
    ),
    StepDefinition(
        id=2,
        title="Failure rollback",
        subtitle="ABORT + COMPENSATE release the frozen capacity",
        narrative=(
            "The task fails on its node. The saga marks it aborted, compensation returns the "
            "frozen capacity and applies a friction penalty so the node is not picked again at once."
        ),
        formula=r"f \leftarrow \text{clamp}(f+\alpha\cdot penalty,0,10),\quad reservedQuota \leftarrow reservedQuota-\Delta y",
        actions=[
            FailAction(task_id="task-1", agent_id="B"),
            AbortAction(task_id="task-1", agent_id="B"),
            CompensateAction(task_id="task-1", agent_id="B", delta=100),
        ],
    ),
    StepDefinition(
        id=3,
        title="Re-routing around friction",
        subtitle="High-friction nodes are priced out",
        narrative=(
            "Quotes are compared again. The failed node's friction inflates its P_eff, "
            "so a healthy node takes the next task."
        ),
        formula=r"P_{eff} \propto (1+f)/\hat{s}",
        actions=[
            ComparePricesAction(candidates=["A", "B", "C"], delta=100),
            RouteAction(task_id="task-2", delta=100, candidates=["A"]),
            ReserveAction(task_id="task-2", agent_id="A", delta=100),
            DispatchAction(task_id="task-2", agent_id="A"),
        ],
    ),
    StepDefinition(
        id=4,
        title="Commit settlement",
        subtitle="COMMIT settles the payment",
        narrative=(
            "After validation the task commits: the reservation is released, the payment is "
            "credited to the node and the burn is taken from the payment, not from y."
        ),
        formula=r"payment= P_{eff},\; burn=payment\cdot r_{burn},\; agent\_income=payment-burn",
        actions=[
            ValidateAction(task_id="task-2", agent_id="A"),
            CommitAction(task_id="task-2", agent_id="A", burn_rate=0.01),
        ],
    ),
    StepDefinition(
        id=5,
        title="Backpressure and overflow",
        subtitle="Saturated capacity triggers overflow",
        narrative=(
            "Concurrent tasks pile onto one node, pushing its quote up until capacity runs "
            "out; the overflow routes the next task to a cheaper node with room."
        ),
        formula=r"activeTasks \ge capacity \Rightarrow overflow",
        actions=[
            BackpressureAction(agent_id="A", count=4, delta=100),
            OverflowAction(from_agent="A", to_agent="C", task_id="task-7", delta=100),
        ],
    ),
    StepDefinition(
        id=6,
        title="Threshold clearing",
        subtitle="Bancor-style tax and fee rebalancing",
        narrative=(
            "At the clearing boundary surpluses beyond the threshold are taxed, deficits "
            "beyond it pay a rebalancing fee and unhealthy nodes are liquidated."
        ),
        formula=r"|tradeBalance-avg| > threshold \Rightarrow tax/fee",
        actions=[
            BancorSettleAction(agent_id="A", amount=8, action_type="TAX"),
            BancorSettleAction(agent_id="B", amount=1.2, action_type="FEE"),
        ],
    ),
]
