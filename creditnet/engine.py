from __future__ import annotations
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import math

from .amm import commit, get_base_price, get_delta_x, get_effective_price, reserve, sync_agent_y
from .bancor import bancor_settle
from .config import (
    AutoTickOptions,
    BACKPRESSURE_DELTA,
    COMMIT_FRICTION_DECAY,
    COMPENSATE_FRICTION_PENALTY,
    ClearingParams,
    DEFAULT_BURN_RATE,
    DEFAULT_CLIENT_BALANCE,
    DEFAULT_SIM_SEED,
    FRICTION_DECAY_PER_TICK,
    INFLIGHT_BATCH_SIZE,
    UNISOLATE_FRICTION,
    interactive_options,
)
from .core import (
    AbortAction,
    ActionResult,
    AgentState,
    BackpressureAction,
    BancorSettleAction,
    CommitAction,
    ComparePricesAction,
    CompensateAction,
    DispatchAction,
    FailAction,
    INFLIGHT_STATUSES,
    LedgerAction,
    LedgerEntry,
    OverflowAction,
    ReserveAction,
    RouteAction,
    SimulationState,
    StepAction,
    Task,
    TaskStatus,
    TaskValidation,
    TickStats,
    ValidateAction,
    ValidationReason,
    format_agent,
    with_agent,
)
from .factory import build_initial_state, create_bootstrapped_agent_state, next_agent_id
from .hooks import decay_friction, update_score
from .metrics import MetricsStore
from .rng import next_random_unit, normalize_seed, random_int_from_unit
from .router import RoutePolicy, apply_diversification_guard, compare_prices, route_task, should_overflow
from .saga import can_reach, advance_task, saga_abort
from .tutorial import STEP_DEFINITIONS, StepDefinition

logger = logging.getLogger(__name__)

RandomFn = Callable[[], float]


# -----------------------------
# Action execution
# -----------------------------
class _ActionContext:
    """Scratch copy of the mutable parts of a state while one action runs."""

    def __init__(self, state: SimulationState, step: int) -> None:
        self.base = state
        self.step = step
        self.agents: Dict[str, AgentState] = dict(state.agents)
        self.tasks: List[Task] = state.tasks
        self._tasks_copied = False
        self.entries: List[LedgerEntry] = []
        self.price_comparison = state.price_comparison
        self.client_balance = state.client_balance
        self.rng_state = normalize_seed(state.rng_state)
        self.task_seq = state.task_seq
        self.narrative = state.last_narrative

    def random(self) -> float:
        self.rng_state, value = next_random_unit(self.rng_state)
        return value

    def new_task_id(self, prefix: str) -> str:
        self.task_seq += 1
        return f"{prefix}-{self.task_seq}"

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def put_task(self, task: Task) -> None:
        if not self._tasks_copied:
            self.tasks = list(self.tasks)
            self._tasks_copied = True
        for idx, existing in enumerate(self.tasks):
            if existing.id == task.id:
                self.tasks[idx] = task
                return
        self.tasks.append(task)

    def move_task(self, task_id: str, target: TaskStatus) -> bool:
        """Walk a task to ``target`` along legal edges; False (and no change) if it cannot get there."""
        task = self.find_task(task_id)
        if task is None:
            return False
        if not can_reach(task.status, target):
            logger.warning("step=%d rejected %s: %s -> %s", self.step, task_id, task.status, target)
            return False
        self.put_task(advance_task(task, target))
        return True

    def record(
        self,
        before: AgentState,
        after: AgentState,
        action: LedgerAction,
        description: str,
        delta_balance: float = 0.0,
        delta_quota: float = 0.0,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            step=self.step,
            agent_id=after.id,
            action=action,
            delta_y=after.y - before.y,
            y_before=before.y,
            y_after=after.y,
            price_before=get_base_price(before),
            price_after=get_base_price(after),
            f_before=before.f,
            f_after=after.f,
            description=description,
            delta_balance=delta_balance,
            delta_quota=delta_quota,
        )
        self.entries.append(entry)
        return entry

    def result(self) -> ActionResult:
        if self.entries and logger.isEnabledFor(logging.DEBUG):
            for e in self.entries:
                logger.debug("[LEDGER] step=%d agent=%s action=%s %s", e.step, e.agent_id, e.action, e.description)
        state = replace(
            self.base,
            agents=self.agents,
            tasks=self.tasks,
            ledger=self.base.ledger + self.entries if self.entries else self.base.ledger,
            price_comparison=self.price_comparison,
            client_balance=self.client_balance,
            rng_state=self.rng_state,
            task_seq=self.task_seq,
            last_narrative=self.narrative,
        )
        return ActionResult(state=state, entries=list(self.entries))


def _route(ctx: _ActionContext, action: RouteAction) -> None:
    existing = ctx.find_task(action.task_id)
    if existing is not None and existing.status != "INIT":
        ctx.narrative = f"ROUTE rejected: {action.task_id} is already {existing.status}"
        logger.warning("step=%d %s", ctx.step, ctx.narrative)
        return

    policy = None
    if action.route_near_best_ratio is not None or action.route_temperature is not None:
        defaults = RoutePolicy()
        policy = RoutePolicy(
            near_best_ratio=action.route_near_best_ratio if action.route_near_best_ratio is not None else defaults.near_best_ratio,
            temperature=action.route_temperature if action.route_temperature is not None else defaults.temperature,
        )
    result = route_task(ctx.agents, action.delta, action.candidates, ctx.random, policy)
    selected = result.selected_agent or action.target
    agent = ctx.agents.get(selected) if selected else None
    quoted = get_delta_x(agent, action.delta) if agent is not None else math.inf
    effective = result.prices.get(selected, math.inf) if selected else math.inf

    ctx.put_task(Task(
        id=action.task_id,
        assigned_to=selected,
        delta=action.delta,
        quoted_price=quoted,
        effective_price=effective,
        created_tick=ctx.base.tick,
    ))
    ctx.price_comparison = result.prices
    if selected:
        ctx.narrative = f"ROUTE: {action.task_id} -> {selected}, {result.reason}"
    else:
        ctx.narrative = f"ROUTE: {action.task_id} failed, {result.reason}"

    if agent is not None:
        ctx.record(agent, agent, "ROUTE",
                   f"ROUTE {action.task_id} -> {selected}, P_eff={effective:.2f} | {result.reason}")


def _reserve(ctx: _ActionContext, action: ReserveAction) -> None:
    task = ctx.find_task(action.task_id)
    target_id = (task.assigned_to or action.agent_id) if task is not None else None
    agent = ctx.agents.get(target_id) if target_id else None
    if task is None or agent is None:
        ctx.narrative = f"RESERVE failed: task={action.task_id} or its agent does not exist"
        return
    if task.status != "INIT":
        ctx.narrative = f"RESERVE rejected: {action.task_id} is {task.status}"
        logger.warning("step=%d %s", ctx.step, ctx.narrative)
        return

    result = reserve(agent, action.delta)
    ctx.agents[target_id] = result.agent
    if not result.ok:
        ctx.put_task(replace(advance_task(task, "ABORT"), assigned_to=target_id))
        ctx.narrative = f"RESERVE failed: {target_id} {result.reason}"
        return

    ctx.put_task(replace(
        advance_task(task, "RESERVE"),
        assigned_to=target_id,
        delta=action.delta,
        reserved=True,
        quoted_price=task.quoted_price if math.isfinite(task.quoted_price) else get_delta_x(agent, action.delta),
        effective_price=(task.effective_price if math.isfinite(task.effective_price)
                         else get_effective_price(agent, action.delta)),
    ))
    ctx.record(agent, result.agent, "RESERVE", f"RESERVE {action.task_id}: froze capacity {action.delta:g}")
    ctx.narrative = f"RESERVE ok: {target_id} froze {action.delta:g}"


def _dispatch(ctx: _ActionContext, action: DispatchAction) -> None:
    if ctx.move_task(action.task_id, "DISPATCH"):
        ctx.narrative = f"DISPATCH: {action.task_id} is executing"
    else:
        ctx.narrative = f"DISPATCH rejected: {action.task_id}"


def _fail(ctx: _ActionContext, action: FailAction) -> None:
    agent = ctx.agents.get(action.agent_id)
    if agent is not None:
        ctx.agents[action.agent_id] = replace(agent, status="failed")
    ctx.move_task(action.task_id, "ABORT")
    ctx.narrative = f"FAIL: {action.task_id} failed on {action.agent_id}"


def _abort(ctx: _ActionContext, action: AbortAction) -> None:
    if ctx.move_task(action.task_id, "ABORT"):
        ctx.narrative = f"ABORT: {action.task_id} marked for rollback"
    else:
        ctx.narrative = f"ABORT rejected: {action.task_id}"


def _compensate(ctx: _ActionContext, action: CompensateAction) -> None:
    task = ctx.find_task(action.task_id)
    agent_id = (task.assigned_to or action.agent_id) if task is not None else None
    agent = ctx.agents.get(agent_id) if agent_id else None
    if task is None or agent is None:
        return
    if not can_reach(task.status, "ABORTED"):
        ctx.narrative = f"COMPENSATE rejected: {action.task_id} is {task.status}"
        logger.warning("step=%d %s", ctx.step, ctx.narrative)
        return

    result = saga_abort(agent, task, COMPENSATE_FRICTION_PENALTY)
    ctx.agents[agent_id] = result.agent
    ctx.put_task(result.task)
    ctx.client_balance += result.refund_amount
    ctx.record(agent, result.agent, "ABORT", f"COMPENSATE {action.task_id}: rolled back frozen capacity",
               delta_balance=result.refund_amount)
    ctx.narrative = f"COMPENSATE: {action.task_id} rolled back, refund {result.refund_amount:.2f}"
    if result.agent.status == "isolated":
        logger.info("step=%d %s isolated after compensation: %s", ctx.step, agent_id, format_agent(result.agent))


def _validate(ctx: _ActionContext, action: ValidateAction) -> None:
    if ctx.move_task(action.task_id, "VALIDATE"):
        ctx.narrative = f"VALIDATE: {action.task_id} passed validation"
    else:
        ctx.narrative = f"VALIDATE rejected: {action.task_id}"


def _commit(ctx: _ActionContext, action: CommitAction) -> None:
    task = ctx.find_task(action.task_id)
    agent_id = (task.assigned_to or action.agent_id) if task is not None else None
    agent = ctx.agents.get(agent_id) if agent_id else None
    if task is None or agent is None:
        return
    if not task.reserved or not can_reach(task.status, "COMMITTED"):
        ctx.narrative = f"COMMIT rejected: {action.task_id} is {task.status} without a live reservation"
        logger.warning("step=%d %s", ctx.step, ctx.narrative)
        return

    payment = task.effective_price if math.isfinite(task.effective_price) else get_effective_price(agent, task.delta)
    burn_rate = action.burn_rate if action.burn_rate is not None else DEFAULT_BURN_RATE
    if not math.isfinite(payment) or payment <= 0 or ctx.client_balance < payment:
        ctx.move_task(action.task_id, "ABORT")
        ctx.narrative = f"COMMIT failed: client balance short or quote invalid ({payment:.2f})"
        return

    committed = commit(agent, task.delta, payment, burn_rate)
    next_agent = sync_agent_y(decay_friction(update_score(committed.agent, True), COMMIT_FRICTION_DECAY))
    ctx.agents[agent_id] = next_agent
    ctx.client_balance -= payment
    ctx.put_task(replace(
        advance_task(task, "COMMITTED"),
        payment=payment,
        burn=committed.burn_amount,
        effective_price=payment,
        reserved=False,
    ))

    ctx.record(agent, next_agent, "COMMIT",
               f"COMMIT {action.task_id}: payment={payment:.2f}, burn={committed.burn_amount:.2f}",
               delta_balance=committed.net_payment)
    if committed.burn_amount > 0:
        ctx.record(next_agent, next_agent, "BURN", f"BURN from payment: {committed.burn_amount:.2f}",
                   delta_balance=-committed.burn_amount)
    ctx.narrative = f"COMMIT ok: {action.task_id}, client paid {payment:.2f}"


def _compare_prices(ctx: _ActionContext, action: ComparePricesAction) -> None:
    prices = compare_prices(ctx.agents, action.delta, action.candidates)
    ctx.price_comparison = prices
    finite = [p for p in prices.values() if math.isfinite(p)]
    if finite:
        ctx.narrative = f"COMPARE_PRICES: best quote {min(finite):.2f}"
    else:
        ctx.narrative = "COMPARE_PRICES: no available quote"


def _backpressure(ctx: _ActionContext, action: BackpressureAction) -> None:
    delta = action.delta if action.delta is not None else BACKPRESSURE_DELTA
    current = ctx.agents.get(action.agent_id)
    if current is None:
        return

    refused: Optional[str] = None
    for i in range(action.count):
        task = Task(
            id=ctx.new_task_id("task-bp"),
            assigned_to=action.agent_id,
            delta=delta,
            quoted_price=get_delta_x(current, delta),
            effective_price=get_effective_price(current, delta),
            created_tick=ctx.base.tick,
        )
        before = current
        result = reserve(current, delta)
        current = result.agent
        if not result.ok:
            ctx.put_task(advance_task(task, "ABORT"))
            refused = result.reason
            break
        ctx.put_task(replace(advance_task(task, "DISPATCH"), reserved=True))
        ctx.record(before, current, "RESERVE", f"BACKPRESSURE {i + 1}/{action.count}")

    if should_overflow(current, delta):
        current = replace(current, status="overloaded")
    ctx.agents[action.agent_id] = current
    ctx.narrative = f"BACKPRESSURE: {action.agent_id} concurrency {action.count}"
    if refused:
        ctx.narrative += f", reserve refused: {refused}"


def _overflow(ctx: _ActionContext, action: OverflowAction) -> None:
    routed = route_task(ctx.agents, action.delta, [action.to_agent], ctx.random)
    selected = routed.selected_agent or action.to_agent
    target = ctx.agents.get(selected)
    if target is None:
        return

    task = Task(
        id=action.task_id,
        assigned_to=selected,
        delta=action.delta,
        quoted_price=get_delta_x(target, action.delta),
        effective_price=get_effective_price(target, action.delta),
        created_tick=ctx.base.tick,
    )
    result = reserve(target, action.delta)
    ctx.agents[selected] = result.agent
    if result.ok:
        ctx.put_task(replace(advance_task(task, "RESERVE"), reserved=True))
        ctx.narrative = f"OVERFLOW: {action.task_id} spilled from {action.from_agent} to {selected}"
    else:
        ctx.put_task(advance_task(task, "ABORT"))
        ctx.narrative = f"OVERFLOW failed: {selected} {result.reason}"
    ctx.record(target, result.agent, "RESERVE", f"OVERFLOW {action.from_agent} -> {selected}")
    ctx.price_comparison = routed.prices


def _bancor_settle(ctx: _ActionContext, action: BancorSettleAction) -> None:
    agent = ctx.agents.get(action.agent_id)
    if agent is None:
        return
    amount = max(0.0, action.amount)
    trade_balance = agent.trade_balance - amount if action.action_type == "TAX" else agent.trade_balance + amount
    updated = sync_agent_y(replace(agent, balance=agent.balance - amount, trade_balance=trade_balance))
    ctx.agents[action.agent_id] = updated
    ledger_action: LedgerAction = "BANCOR_TAX" if action.action_type == "TAX" else "BANCOR_FEE"
    ctx.record(agent, updated, ledger_action, f"BANCOR {action.action_type}: {amount:.2f}", delta_balance=-amount)
    ctx.narrative = f"BANCOR_SETTLE: {action.agent_id} {action.action_type} {amount:.2f}"


_HANDLERS: Dict[type, Callable[[_ActionContext, StepAction], None]] = {
    RouteAction: _route,
    ReserveAction: _reserve,
    DispatchAction: _dispatch,
    FailAction: _fail,
    AbortAction: _abort,
    CompensateAction: _compensate,
    ValidateAction: _validate,
    CommitAction: _commit,
    ComparePricesAction: _compare_prices,
    BackpressureAction: _backpressure,
    OverflowAction: _overflow,
    BancorSettleAction: _bancor_settle,
}


def execute_action(state: SimulationState, action: StepAction, step_num: int) -> ActionResult:
    """Apply one action; returns the new state and the ledger entries it produced."""
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"unknown action: {action!r}")
    ctx = _ActionContext(state, step_num)
    handler(ctx, action)
    return ctx.result()


def execute_step(state: SimulationState, actions: Sequence[StepAction], step_num: int) -> SimulationState:
    current = state
    for action in actions:
        current = execute_action(current, action, step_num).state
    return current


# -----------------------------
# Clearing
# -----------------------------
def apply_periodic_clearing(
    state: SimulationState,
    step_num: int,
    params: Optional[ClearingParams] = None,
) -> SimulationState:
    """Network-wide tax/fee pass plus threshold liquidation."""
    settled = bancor_settle(state.agents, params)
    agents = dict(state.agents)
    entries: List[LedgerEntry] = []
    parts: List[str] = []

    for aid, result in settled.items():
        before = state.agents[aid]
        after = result.agent
        agents[aid] = after
        if result.type == "NONE" and abs(result.adjustment) < 1e-9:
            continue

        if result.type == "LIQUIDATE":
            action: LedgerAction = "LIQUIDATE"
            description = f"LIQUIDATE: {result.reason}"
            delta_balance = 0.0
            delta_quota = after.quota - before.quota
            logger.info("step=%d liquidated %s: quota %.0f -> %.0f", step_num, aid, before.quota, after.quota)
        else:
            action = "BANCOR_TAX" if result.type == "TAX" else "BANCOR_FEE"
            description = f"CLEARING {result.type}: {abs(result.adjustment):.2f}"
            delta_balance = result.adjustment
            delta_quota = 0.0
        entries.append(LedgerEntry(
            step=step_num,
            agent_id=aid,
            action=action,
            delta_y=after.y - before.y,
            y_before=before.y,
            y_after=after.y,
            price_before=get_base_price(before),
            price_after=get_base_price(after),
            f_before=before.f,
            f_after=after.f,
            description=description,
            delta_balance=delta_balance,
            delta_quota=delta_quota,
        ))
        parts.append(f"{aid}:{result.type}")

    if parts:
        logger.info("step=%d clearing: %s", step_num, ", ".join(parts))
    return replace(
        state,
        agents=agents,
        ledger=state.ledger + entries,
        last_narrative=f"Periodic clearing -> {', '.join(parts)}" if parts else state.last_narrative,
    )


# -----------------------------
# Autonomous tick
# -----------------------------
def sample_processing_delay(agent: AgentState, next_random: RandomFn, min_delay: int, max_delay: int) -> int:
    base_delay = random_int_from_unit(min_delay, max_delay, next_random())
    friction_penalty = 2 if agent.f > 5 else 1 if agent.f > 3 else 0
    return max(1, base_delay + friction_penalty)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def evaluate_task_output(agent: AgentState, next_random: RandomFn, tick: int) -> TaskValidation:
    """
    Synthetic validator. Failure odds rise with friction and fall with score;
    the reported reason follows timeout > tool_error > schema_mismatch > low_score.
    """
    schema_prob = _clamp(0.58 + agent.s_hat * 0.36 - agent.f * 0.05, 0.18, 0.98)
    timeout_prob = _clamp(0.02 + agent.f * 0.045 + (1 - agent.s_hat) * 0.12, 0.01, 0.88)
    tool_error_prob = _clamp(0.015 + agent.f * 0.035, 0.01, 0.72)
    score_raw = agent.s_hat * 100 - agent.f * 4.2 + (next_random() - 0.5) * 20
    score = round(_clamp(score_raw, 0, 100) * 10) / 10
    schema = next_random() < schema_prob
    timeout = next_random() < timeout_prob
    tool_error = (not timeout) and next_random() < tool_error_prob

    reason: ValidationReason = "pass"
    if timeout:
        reason = "timeout"
    elif tool_error:
        reason = "tool_error"
    elif not schema:
        reason = "schema_mismatch"
    elif score < 60:
        reason = "low_score"
    return TaskValidation(
        schema=schema,
        score=score,
        tool_error=tool_error,
        timeout=timeout,
        passed=reason == "pass",
        reason=reason,
        evaluated_tick=tick,
    )


def sample_arrival_plan(next_random: RandomFn, opts: AutoTickOptions) -> Tuple[int, int]:
    """Returns (count, burst) for this tick."""
    base = random_int_from_unit(opts.arrival_base_min, opts.arrival_base_max, next_random())
    burst = 0
    if next_random() < opts.arrival_burst_prob:
        burst = random_int_from_unit(opts.arrival_burst_min, opts.arrival_burst_max, next_random())
    return base + burst, burst


def _adaptive_deltas(base_delta: int, floor: int) -> List[int]:
    if 0 < floor < base_delta:
        deltas = [
            base_delta,
            max(floor, math.floor(base_delta * 0.75)),
            max(floor, math.floor(base_delta * 0.5)),
            floor,
        ]
        deltas = list(dict.fromkeys(deltas))
    else:
        deltas = [base_delta]
    if 1 not in deltas:
        deltas.append(1)
    return deltas


def _payment_estimate(agent: AgentState, task: Task) -> float:
    if math.isfinite(task.effective_price):
        return task.effective_price
    return get_effective_price(agent, task.delta)


def _is_affordable(client_balance: float, payment: float) -> bool:
    return math.isfinite(payment) and payment > 0 and client_balance >= payment


class _TickRun:
    """Threads the evolving state (and its RNG cursor) through one tick."""

    def __init__(self, state: SimulationState, step_num: int) -> None:
        self.state = replace(state, rng_state=normalize_seed(state.rng_state))
        self.step_num = step_num

    def random(self) -> float:
        seed, value = next_random_unit(self.state.rng_state)
        self.state = replace(self.state, rng_state=seed)
        return value

    def act(self, action: StepAction) -> None:
        self.state = execute_action(self.state, action, self.step_num).state

    def task(self, task_id: str) -> Optional[Task]:
        return self.state.find_task(task_id)

    def new_task_id(self, tick: int) -> str:
        seq = self.state.task_seq + 1
        self.state = replace(self.state, task_seq=seq)
        return f"auto-{tick}-{seq}"

    def patch_task(self, task_id: str, **changes) -> None:
        self.state = replace(
            self.state,
            tasks=[replace(t, **changes) if t.id == task_id else t for t in self.state.tasks],
        )

    def abort_and_compensate(self, task_id: str, agent_id: str, delta: float) -> None:
        self.act(AbortAction(task_id=task_id, agent_id=agent_id))
        self.act(CompensateAction(task_id=task_id, agent_id=agent_id, delta=delta))

    def fail_abort_and_compensate(self, task_id: str, agent_id: str, delta: float) -> None:
        self.act(FailAction(task_id=task_id, agent_id=agent_id))
        self.abort_and_compensate(task_id, agent_id, delta)

    def try_commit(self, task_id: str, agent_id: str, delta: float, burn_rate: float) -> bool:
        self.act(CommitAction(task_id=task_id, agent_id=agent_id, burn_rate=burn_rate))
        committed = self.task(task_id)
        if committed is None or committed.status != "COMMITTED":
            self.abort_and_compensate(task_id, agent_id, delta)
            return False
        return True


def execute_auto_tick(
    state: SimulationState,
    step_num: int,
    options: Optional[AutoTickOptions] = None,
) -> SimulationState:
    """
    One autonomous tick:
      1. progress up to 8 in-flight tasks (dispatch, validate, commit or roll back)
      2. sample arrivals and route/reserve/dispatch each one
      3. decay friction, un-isolate healed agents, clear every ``clear_every`` steps
    The returned state carries the tick summary in ``last_narrative`` and
    ``last_tick_stats``.
    """
    opts = (options or AutoTickOptions()).normalized()
    candidates = list(state.agents.keys())
    if not candidates:
        return state

    tick_num = state.tick + 1
    run = _TickRun(state, step_num)
    settled = failed = waiting = 0

    inflight = [t for t in run.state.tasks if t.status in INFLIGHT_STATUSES][:INFLIGHT_BATCH_SIZE]
    for task in inflight:
        if not task.assigned_to:
            continue
        agent_id = task.assigned_to
        agent = run.state.agents.get(agent_id)
        if agent is None:
            continue

        if task.status == "RESERVE":
            run.act(DispatchAction(task_id=task.id, agent_id=agent_id))
            ready_tick = tick_num + sample_processing_delay(
                agent, run.random, opts.processing_delay_min, opts.processing_delay_max)
            run.patch_task(task.id, dispatch_tick=tick_num, ready_tick=ready_tick, validator=None)
            waiting += 1
            continue

        if task.status == "VALIDATE":
            if not _is_affordable(run.state.client_balance, _payment_estimate(agent, task)):
                run.abort_and_compensate(task.id, agent_id, task.delta)
                failed += 1
            elif run.try_commit(task.id, agent_id, task.delta, opts.burn_rate):
                settled += 1
            else:
                failed += 1
            continue

        dispatch_tick = task.dispatch_tick if task.dispatch_tick is not None else max(0, tick_num - 1)
        ready_tick = task.ready_tick if task.ready_tick is not None else dispatch_tick + 1
        if task.dispatch_tick is None or task.ready_tick is None:
            run.patch_task(task.id, dispatch_tick=dispatch_tick, ready_tick=ready_tick)
        if tick_num < ready_tick:
            waiting += 1
            continue

        latest = run.state.agents[agent_id]
        if not _is_affordable(run.state.client_balance, _payment_estimate(latest, task)):
            run.abort_and_compensate(task.id, agent_id, task.delta)
            failed += 1
            continue

        validation = evaluate_task_output(latest, run.random, tick_num)
        run.patch_task(task.id, validator=validation)
        if not validation.passed:
            run.fail_abort_and_compensate(task.id, agent_id, task.delta)
            failed += 1
            continue

        run.act(ValidateAction(task_id=task.id, agent_id=agent_id))
        if run.try_commit(task.id, agent_id, task.delta, opts.burn_rate):
            settled += 1
        else:
            failed += 1

    if opts.suspend_arrivals:
        arrivals, burst = 0, 0
    else:
        arrivals, burst = sample_arrival_plan(run.random, opts)

    dispatched = budget_skipped = capacity_skipped = route_failed = reserve_failed = 0
    phase_in_cycle = step_num % opts.clear_every
    ticks_until_clear = opts.clear_every if phase_in_cycle == 0 else opts.clear_every - phase_in_cycle

    for _ in range(arrivals):
        task_id = run.new_task_id(tick_num)
        base_delta = random_int_from_unit(opts.min_delta, opts.max_delta, run.random())

        client_balance = run.state.client_balance
        pacing_cap = client_balance / max(1, ticks_until_clear)
        payment_cap = max(0.0, min(client_balance * opts.max_payment_ratio, pacing_cap))

        dispatch_delta = base_delta
        affordable: List[str] = []
        best_affordable: List[str] = []
        best_finite: List[str] = []
        best_delta = base_delta
        for candidate_delta in _adaptive_deltas(base_delta, opts.adaptive_delta_floor):
            run.act(ComparePricesAction(candidates=candidates, delta=candidate_delta))
            prices = run.state.price_comparison or {}
            finite = [aid for aid in candidates if math.isfinite(prices.get(aid, math.inf))]
            current_affordable = [
                aid for aid in candidates
                if aid in prices
                and _is_affordable(run.state.client_balance, prices[aid])
                and prices[aid] <= payment_cap + 1e-9
            ]
            if len(finite) > len(best_finite):
                best_finite = finite
            if current_affordable:
                if len(current_affordable) > len(best_affordable):
                    best_delta = candidate_delta
                    best_affordable = current_affordable
                if len(current_affordable) >= 2:
                    dispatch_delta = candidate_delta
                    affordable = current_affordable
                    break
        if not affordable and best_affordable:
            dispatch_delta = best_delta
            affordable = best_affordable

        affordable = apply_diversification_guard(
            run.state.ledger, affordable, opts.route_near_best_ratio, run.random)
        if not affordable:
            if best_finite:
                budget_skipped += 1
            else:
                capacity_skipped += 1
            continue

        run.act(RouteAction(
            task_id=task_id,
            delta=dispatch_delta,
            candidates=affordable,
            route_near_best_ratio=opts.route_near_best_ratio,
            route_temperature=opts.route_temperature,
        ))
        routed = run.task(task_id)
        if routed is None or not routed.assigned_to:
            route_failed += 1
            continue

        agent_id = routed.assigned_to
        run.act(ReserveAction(task_id=task_id, agent_id=agent_id, delta=dispatch_delta))
        reserved = run.task(task_id)
        if reserved is None or reserved.status != "RESERVE":
            reserve_failed += 1
            continue

        run.act(DispatchAction(task_id=task_id, agent_id=agent_id))
        dispatch_agent = run.state.agents[agent_id]
        ready_tick = tick_num + sample_processing_delay(
            dispatch_agent, run.random, opts.processing_delay_min, opts.processing_delay_max)
        run.patch_task(task_id, dispatch_tick=tick_num, ready_tick=ready_tick, validator=None)
        dispatched += 1
        waiting += 1

    stats = TickStats(
        tick=tick_num,
        arrivals=arrivals,
        burst=burst,
        dispatched=dispatched,
        settled=settled,
        failed=failed,
        waiting=waiting,
        budget_skipped=budget_skipped,
        capacity_skipped=capacity_skipped,
        route_failed=route_failed,
        reserve_failed=reserve_failed,
    )
    return _finalize_tick(run.state, step_num, tick_num, stats, opts)


def _finalize_tick(
    state: SimulationState,
    step_num: int,
    tick_num: int,
    stats: TickStats,
    opts: AutoTickOptions,
) -> SimulationState:
    narrative = stats.narrative()
    agents: Dict[str, AgentState] = {}
    for aid, agent in state.agents.items():
        healed = sync_agent_y(decay_friction(agent, FRICTION_DECAY_PER_TICK))
        if healed.status == "isolated" and healed.f < UNISOLATE_FRICTION:
            healed = replace(healed, status="idle")
        agents[aid] = healed
    finalized = replace(state, agents=agents)

    if step_num % opts.clear_every == 0:
        finalized = apply_periodic_clearing(finalized, step_num)
        if opts.budget_refill_threshold > 0 and finalized.client_balance < opts.budget_refill_threshold:
            refill = opts.budget_refill_threshold - finalized.client_balance
            finalized = replace(finalized, client_balance=finalized.client_balance + refill)
            narrative = f"{narrative} | BUDGET_REFILL +{refill:.0f}"

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("step=%d %s client=%.2f", step_num, narrative, finalized.client_balance)
    return replace(
        finalized,
        tick=tick_num,
        phase=step_num,
        last_narrative=narrative,
        last_tick_stats=stats,
    )


# -----------------------------
# Session
# -----------------------------
class SimulationEngine:
    """
    Interactive session: owns the current state, a snapshot per phase for
    time travel and a metrics store. The first ``len(STEP_DEFINITIONS)``
    phases replay the guided script; every later phase is an autonomous tick.
    """

    def __init__(
        self,
        seed: int = DEFAULT_SIM_SEED,
        client_balance: float = DEFAULT_CLIENT_BALANCE,
        auto_options: Optional[AutoTickOptions] = None,
        guided: bool = False,
    ) -> None:
        self.seed = seed
        self.client_balance = client_balance
        self.auto_options = auto_options or interactive_options()
        self.state: SimulationState = build_initial_state(client_balance, seed)
        self.snapshots: Dict[int, SimulationState] = {}
        self.metrics = MetricsStore()
        self.reset(guided=guided)

    @property
    def guide_phases(self) -> int:
        return len(STEP_DEFINITIONS)

    @property
    def phase(self) -> int:
        return self.state.phase

    @property
    def tick(self) -> int:
        return self.state.tick

    def _initial_state(self, guided: bool) -> SimulationState:
        return build_initial_state(self.client_balance, self.seed, phase=0 if guided else self.guide_phases)

    def reset(self, guided: bool = False) -> None:
        self.state = self._initial_state(guided)
        self.snapshots = {self.state.phase: self.state.clone()}
        self.metrics = MetricsStore()
        self.metrics.record(self.state)

    def next_step(self) -> SimulationState:
        phase = self.state.phase
        step_num = phase + 1
        if phase < self.guide_phases:
            stepped = execute_step(self.state, STEP_DEFINITIONS[phase].actions, step_num)
            stepped = replace(stepped, phase=step_num, tick=self.state.tick + 1)
        else:
            stepped = execute_auto_tick(self.state, step_num, self.auto_options)
        self.state = stepped
        self.snapshots[step_num] = stepped.clone()
        self.metrics.record(stepped)
        return stepped

    def step(self, n_ticks: int = 1) -> SimulationState:
        for _ in range(n_ticks):
            self.next_step()
        return self.state

    def prev_step(self) -> bool:
        if self.state.phase <= 0:
            return False
        previous = self.snapshots.get(self.state.phase - 1)
        if previous is None:
            return False
        self.state = previous.clone()
        self._rewind_metrics()
        return True

    def go_to_step(self, step: int) -> bool:
        snapshot = self.snapshots.get(step)
        if snapshot is not None:
            self.state = snapshot.clone()
            self._rewind_metrics()
            return True
        if step < 0 or step > self.guide_phases:
            return False

        replay = self._initial_state(guided=True)
        for idx in range(step):
            replay = execute_step(replay, STEP_DEFINITIONS[idx].actions, idx + 1)
            replay = replace(replay, phase=idx + 1, tick=idx + 1)
        self.state = replay
        self.snapshots[step] = replay.clone()
        self._rewind_metrics()
        return True

    def _rewind_metrics(self) -> None:
        self.metrics.truncate_after(self.state.phase)
        if not self.metrics.has_phase(self.state.phase):
            self.metrics.record(self.state)

    def add_agent(self, agent_id: Optional[str] = None, label: Optional[str] = None) -> str:
        agents = self.state.agents
        agent_id = agent_id.strip() if agent_id and agent_id.strip() else next_agent_id(agents)
        if agent_id in agents:
            return agent_id
        label = label.strip() if label and label.strip() else f"Agent-{agent_id}"
        agent = create_bootstrapped_agent_state(agent_id, label, agents)
        self.state = with_agent(self.state, agent)
        return agent_id

    def current_step_definition(self) -> Optional[StepDefinition]:
        if self.state.phase <= 0:
            return None
        return STEP_DEFINITIONS[min(self.state.phase, self.guide_phases) - 1]
