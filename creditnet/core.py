from __future__ import annotations
from dataclasses import dataclass, field, asdict, replace
from typing import ClassVar, Dict, List, Literal, Optional, Union
import copy
import logging
import math

logger = logging.getLogger(__name__)

AgentStatus = Literal["idle", "executing", "failed", "overloaded", "isolated"]
TaskStatus = Literal[
    "INIT", "RESERVE", "DISPATCH", "VALIDATE", "COMMIT", "COMMITTED", "ABORT", "COMPENSATE", "ABORTED"
]
LedgerAction = Literal["ROUTE", "RESERVE", "COMMIT", "ABORT", "BURN", "BANCOR_TAX", "BANCOR_FEE", "LIQUIDATE"]
ValidationReason = Literal["pass", "schema_mismatch", "tool_error", "timeout", "low_score"]

TASK_STATUSES = ("INIT", "RESERVE", "DISPATCH", "VALIDATE", "COMMIT", "COMMITTED", "ABORT", "COMPENSATE", "ABORTED")
INFLIGHT_STATUSES = ("RESERVE", "DISPATCH", "VALIDATE")
OPEN_STATUSES = ("INIT",) + INFLIGHT_STATUSES

SCORE_MIN = 0.1
SCORE_MAX = 1.5
FRICTION_MAX = 10.0


class InvariantViolation(AssertionError):
    """Engine state broke a structural invariant; always a bug, never a domain outcome."""


def format_agent(agent: "AgentState") -> str:
    return (
        f"{agent.id} status={agent.status} quota={agent.quota:.0f} reserved={agent.reserved_quota:.0f} "
        f"y={agent.y:.0f} active={agent.active_tasks}/{agent.capacity} f={agent.f:.3f} "
        f"s_hat={agent.s_hat:.3f} balance={agent.balance:.2f} trade={agent.trade_balance:.2f}"
    )


# -----------------------------
# Agents
# -----------------------------
@dataclass(frozen=True)
class AgentState:
    id: str
    label: str
    quota: float
    reserved_quota: float
    y: float  # shadow pool size, max(1, quota - reserved_quota)
    k: float  # AMM constant
    f: float  # friction
    s_hat: float  # normalized score
    capacity: int  # concurrency slots
    active_tasks: int
    total_completed: int = 0
    total_failed: int = 0
    status: AgentStatus = "idle"
    trade_balance: float = 0.0  # net settled flow, pulled toward the mean by clearing
    balance: float = 0.0
    liquidation_ratio: float = -0.25

    @property
    def free_quota(self) -> float:
        return max(0.0, self.quota - self.reserved_quota)

    @property
    def outcomes(self) -> int:
        return self.total_completed + self.total_failed

    def to_dict(self) -> dict:
        return asdict(self)


# -----------------------------
# Tasks
# -----------------------------
@dataclass(frozen=True)
class TaskValidation:
    schema: bool
    score: float
    tool_error: bool
    timeout: bool
    passed: bool
    reason: ValidationReason
    evaluated_tick: int


@dataclass(frozen=True)
class Task:
    id: str
    assigned_to: Optional[str]
    status: TaskStatus = "INIT"
    delta: float = 0.0
    quoted_price: float = math.inf  # raw AMM cost
    effective_price: float = math.inf  # quality/load adjusted quote, charged at COMMIT
    payment: float = 0.0
    burn: float = 0.0
    reserved: bool = False  # holds capacity on assigned_to
    created_tick: int = 0
    dispatch_tick: Optional[int] = None
    ready_tick: Optional[int] = None
    validator: Optional[TaskValidation] = None

    def to_dict(self) -> dict:
        return asdict(self)


# -----------------------------
# Ledger
# -----------------------------
@dataclass(frozen=True)
class LedgerEntry:
    step: int
    agent_id: str
    action: LedgerAction
    delta_y: float
    y_before: float
    y_after: float
    price_before: float
    price_after: float
    f_before: float
    f_after: float
    description: str
    delta_balance: float = 0.0
    delta_quota: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TickStats:
    tick: int
    arrivals: int = 0
    burst: int = 0
    dispatched: int = 0
    settled: int = 0
    failed: int = 0
    waiting: int = 0
    budget_skipped: int = 0
    capacity_skipped: int = 0
    route_failed: int = 0
    reserve_failed: int = 0

    def narrative(self) -> str:
        return (
            f"AUTO TICK {self.tick}: arrivals={self.arrivals}, burst={self.burst}, "
            f"dispatched={self.dispatched}, settled={self.settled}, failed={self.failed}, "
            f"waiting={self.waiting}, budgetSkipped={self.budget_skipped}, "
            f"capacitySkipped={self.capacity_skipped}, routeFailed={self.route_failed}, "
            f"reserveFailed={self.reserve_failed}"
        )

    def to_dict(self) -> dict:
        return asdict(self)


# -----------------------------
# Simulation state
# -----------------------------
@dataclass
class SimulationState:
    """
    Whole-system snapshot. Treated as immutable by convention: engine functions
    return a new value and never mutate the containers of the one they receive.
    """
    agents: Dict[str, AgentState]
    tasks: List[Task] = field(default_factory=list)
    ledger: List[LedgerEntry] = field(default_factory=list)
    price_comparison: Optional[Dict[str, float]] = None
    client_balance: float = 0.0
    tick: int = 0
    phase: int = 0
    rng_state: int = 1
    last_narrative: str = ""
    task_seq: int = 0
    last_tick_stats: Optional[TickStats] = None

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def clone(self) -> "SimulationState":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "agents": {aid: a.to_dict() for aid, a in self.agents.items()},
            "tasks": [t.to_dict() for t in self.tasks],
            "ledger": [e.to_dict() for e in self.ledger],
            "price_comparison": dict(self.price_comparison) if self.price_comparison is not None else None,
            "client_balance": float(self.client_balance),
            "tick": int(self.tick),
            "phase": int(self.phase),
            "rng_state": int(self.rng_state),
            "last_narrative": self.last_narrative,
            "task_seq": int(self.task_seq),
            "last_tick_stats": self.last_tick_stats.to_dict() if self.last_tick_stats else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationState":
        tasks = []
        for raw in data.get("tasks", []):
            raw = dict(raw)
            validator = raw.pop("validator", None)
            tasks.append(Task(**raw, validator=TaskValidation(**validator) if validator else None))
        stats = data.get("last_tick_stats")
        comparison = data.get("price_comparison")
        return cls(
            agents={aid: AgentState(**raw) for aid, raw in data["agents"].items()},
            tasks=tasks,
            ledger=[LedgerEntry(**raw) for raw in data.get("ledger", [])],
            price_comparison=dict(comparison) if comparison is not None else None,
            client_balance=float(data.get("client_balance", 0.0)),
            tick=int(data.get("tick", 0)),
            phase=int(data.get("phase", 0)),
            rng_state=int(data.get("rng_state", 1)),
            last_narrative=data.get("last_narrative", ""),
            task_seq=int(data.get("task_seq", 0)),
            last_tick_stats=TickStats(**stats) if stats else None,
        )


# -----------------------------
# Actions
# -----------------------------
@dataclass(frozen=True)
class RouteAction:
    type: ClassVar[str] = "ROUTE"
    task_id: str
    delta: float
    target: Optional[str] = None
    candidates: Optional[List[str]] = None
    route_near_best_ratio: Optional[float] = None
    route_temperature: Optional[float] = None


@dataclass(frozen=True)
class ReserveAction:
    type: ClassVar[str] = "RESERVE"
    task_id: str
    agent_id: str
    delta: float


@dataclass(frozen=True)
class DispatchAction:
    type: ClassVar[str] = "DISPATCH"
    task_id: str
    agent_id: str


@dataclass(frozen=True)
class FailAction:
    type: ClassVar[str] = "FAIL"
    task_id: str
    agent_id: str


@dataclass(frozen=True)
class AbortAction:
    type: ClassVar[str] = "ABORT"
    task_id: str
    agent_id: str


@dataclass(frozen=True)
class CompensateAction:
    type: ClassVar[str] = "COMPENSATE"
    task_id: str
    agent_id: str
    delta: float


@dataclass(frozen=True)
class ValidateAction:
    type: ClassVar[str] = "VALIDATE"
    task_id: str
    agent_id: str


@dataclass(frozen=True)
class CommitAction:
    type: ClassVar[str] = "COMMIT"
    task_id: str
    agent_id: str
    burn_rate: Optional[float] = None


@dataclass(frozen=True)
class ComparePricesAction:
    type: ClassVar[str] = "COMPARE_PRICES"
    delta: float
    candidates: Optional[List[str]] = None


@dataclass(frozen=True)
class BackpressureAction:
    type: ClassVar[str] = "BACKPRESSURE"
    agent_id: str
    count: int
    delta: Optional[float] = None


@dataclass(frozen=True)
class OverflowAction:
    type: ClassVar[str] = "OVERFLOW"
    from_agent: str
    to_agent: str
    task_id: str
    delta: float


@dataclass(frozen=True)
class BancorSettleAction:
    type: ClassVar[str] = "BANCOR_SETTLE"
    agent_id: str
    amount: float
    action_type: Literal["TAX", "FEE"]


StepAction = Union[
    RouteAction,
    ReserveAction,
    DispatchAction,
    FailAction,
    AbortAction,
    CompensateAction,
    ValidateAction,
    CommitAction,
    ComparePricesAction,
    BackpressureAction,
    OverflowAction,
    BancorSettleAction,
]


@dataclass
class ActionResult:
    state: SimulationState
    entries: List[LedgerEntry]


# -----------------------------
# Invariants
# -----------------------------
_AGENT_NUMERIC_FIELDS = (
    "quota", "reserved_quota", "y", "capacity", "active_tasks", "f", "s_hat", "balance", "trade_balance",
)


def validate_state(state: SimulationState, eps: float = 1e-9) -> List[str]:
    """Return every invariant violation found in ``state`` (empty when healthy)."""
    issues: List[str] = []

    seen: set = set()
    for task in state.tasks:
        if task.id in seen:
            issues.append(f"duplicate task id: {task.id}")
        seen.add(task.id)
        if task.status not in TASK_STATUSES:
            issues.append(f"invalid task status: {task.id}/{task.status}")
        if not math.isfinite(task.delta) or task.delta < 0:
            issues.append(f"invalid task delta: {task.id}/{task.delta}")
        if task.status in INFLIGHT_STATUSES:
            if not task.assigned_to:
                issues.append(f"inflight task without assignee: {task.id}/{task.status}")
            elif task.assigned_to not in state.agents:
                issues.append(f"inflight task on unknown agent: {task.id}/{task.assigned_to}")

    for aid, agent in state.agents.items():
        for name in _AGENT_NUMERIC_FIELDS:
            value = getattr(agent, name)
            if not math.isfinite(value):
                issues.append(f"non-finite agent {aid}.{name}: {value}")
        if agent.reserved_quota < -eps or agent.reserved_quota > agent.quota + eps:
            issues.append(f"invalid reserved_quota: {aid} reserved={agent.reserved_quota} quota={agent.quota}")
        if agent.active_tasks < 0 or agent.active_tasks > agent.capacity + eps:
            issues.append(f"invalid active_tasks: {aid} active={agent.active_tasks} cap={agent.capacity}")
        if agent.f < -eps or agent.f > FRICTION_MAX + eps:
            issues.append(f"invalid friction range: {aid} f={agent.f}")
        if agent.s_hat < SCORE_MIN - eps or agent.s_hat > SCORE_MAX + eps:
            issues.append(f"invalid score range: {aid} s_hat={agent.s_hat}")
        expected_y = max(1.0, agent.quota - agent.reserved_quota)
        if abs(agent.y - expected_y) > 1e-6:
            issues.append(f"y mismatch: {aid} y={agent.y} expected={expected_y}")

    if not math.isfinite(state.client_balance):
        issues.append(f"non-finite client_balance: {state.client_balance}")
    return issues


def assert_invariants(state: SimulationState) -> None:
    issues = validate_state(state)
    if issues:
        logger.error("tick=%d phase=%d broke %d invariant(s): %s", state.tick, state.phase, len(issues), issues[0])
        raise InvariantViolation("; ".join(issues))


def with_agent(state: SimulationState, agent: AgentState) -> SimulationState:
    """Return a copy of ``state`` with ``agent`` inserted or replaced."""
    agents = dict(state.agents)
    agents[agent.id] = agent
    return replace(state, agents=agents)
