"""
Monte-Carlo health check for the autonomous tick loop.

Runs many seeded trials, grows the network mid-run, drains in-flight work
and gates the aggregate commit/failure/route rates. Exit status is 1 when
too many trials fail or an observability gate trips.

    python -m creditnet.selftest --steps 100 --trials 30 --verbose
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence
import argparse
import logging
import math
import sys

import pandas as pd

from .config import AutoTickOptions, DEFAULT_SIM_SEED
from .core import OPEN_STATUSES, SimulationState, validate_state, with_agent
from .engine import execute_auto_tick
from .factory import build_initial_state, create_bootstrapped_agent_state, next_agent_id
from .metrics import route_concentration
from .rng import derive_trial_seed
from .tutorial import STEP_DEFINITIONS

logger = logging.getLogger(__name__)


@dataclass
class SelftestOptions:
    steps: int = 100
    trials: int = 30
    add_nodes_at: List[int] = field(default_factory=lambda: [20, 40, 60])
    client_balance: float = 1_000_000.0
    tick: AutoTickOptions = field(default_factory=AutoTickOptions)

    min_commit_rate: float = 0.82
    max_failure_rate: float = 0.18
    min_routes_per_step: float = 1.8
    max_failed_trial_ratio: float = 0.05

    obs_gate: bool = False
    obs_max_top1_share: float = 1.0
    obs_max_hhi: float = 1.0
    obs_max_budget_skip_ratio: float = 1.0
    obs_max_budget_skip_streak: float = 1_000_000.0
    obs_min_active_route_nodes: float = 0.0

    verbose: bool = False


@dataclass
class TrialResult:
    trial: int
    committed: int
    failed: int
    inflight: int
    routes: int
    commit_rate: float
    failure_rate: float
    routes_per_step: float
    budget_skips: int
    budget_skip_ratio: float
    max_budget_skip_streak: int
    isolated: int
    top1_share: float
    hhi: float
    active_route_nodes: int
    client_balance: float
    issues: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues


def _open_tasks(state: SimulationState) -> int:
    return sum(1 for t in state.tasks if t.status in OPEN_STATUSES)


def run_trial(trial: int, opts: SelftestOptions) -> TrialResult:
    guide = len(STEP_DEFINITIONS)
    state = build_initial_state(opts.client_balance, derive_trial_seed(DEFAULT_SIM_SEED, trial), phase=guide)
    issues: List[str] = []
    budget_skips = 0
    streak = 0
    max_streak = 0
    ticks = 0

    for step in range(1, opts.steps + 1):
        if step in opts.add_nodes_at:
            agent_id = next_agent_id(state.agents)
            agent = create_bootstrapped_agent_state(agent_id, f"Agent-{agent_id}", state.agents)
            state = with_agent(state, agent)

        state = execute_auto_tick(state, guide + step, opts.tick)
        ticks = step
        if state.last_tick_stats is not None and state.last_tick_stats.budget_skipped > 0:
            budget_skips += 1
            streak += 1
            max_streak = max(max_streak, streak)
        else:
            streak = 0

        step_issues = validate_state(state)
        if step_issues:
            issues.append(f"step {step}: {' | '.join(step_issues)}")
            break

    drain_opts = replace(opts.tick, suspend_arrivals=True)
    for _ in range(max(24, math.ceil(opts.steps * 0.4))):
        if _open_tasks(state) <= 0:
            break
        ticks += 1
        state = execute_auto_tick(state, guide + ticks, drain_opts)
        drain_issues = validate_state(state)
        if drain_issues:
            issues.append(f"drain step {ticks}: {' | '.join(drain_issues)}")
            break

    statuses = [t.status for t in state.tasks]
    committed = statuses.count("COMMITTED")
    failed = statuses.count("ABORTED")
    inflight = _open_tasks(state)
    routes = sum(1 for e in state.ledger if e.action == "ROUTE")
    isolated = sum(1 for a in state.agents.values() if a.status == "isolated")
    top1_share, hhi, active_nodes = route_concentration(state.ledger)
    commit_rate = committed / max(1, routes)
    failure_rate = failed / max(1, routes)
    routes_per_step = routes / max(1, opts.steps)

    if commit_rate < opts.min_commit_rate:
        issues.append(f"commit rate too low: {commit_rate:.3f} < {opts.min_commit_rate}")
    if failure_rate > opts.max_failure_rate:
        issues.append(f"failure rate too high: {failure_rate:.3f} > {opts.max_failure_rate}")
    if routes_per_step < opts.min_routes_per_step:
        issues.append(f"routes per step too low: {routes_per_step:.3f} < {opts.min_routes_per_step}")
    if routes <= 0:
        issues.append("no route event produced")
    if inflight > 0:
        issues.append(f"inflight not drained: {inflight}")
    if isolated == len(state.agents):
        issues.append("all agents isolated")

    return TrialResult(
        trial=trial,
        committed=committed,
        failed=failed,
        inflight=inflight,
        routes=routes,
        commit_rate=commit_rate,
        failure_rate=failure_rate,
        routes_per_step=routes_per_step,
        budget_skips=budget_skips,
        budget_skip_ratio=budget_skips / max(1, opts.steps),
        max_budget_skip_streak=max_streak,
        isolated=isolated,
        top1_share=top1_share,
        hhi=hhi,
        active_route_nodes=active_nodes,
        client_balance=state.client_balance,
        issues=issues,
    )


def results_frame(results: Sequence[TrialResult]) -> pd.DataFrame:
    rows = []
    for r in results:
        row = {k: v for k, v in vars(r).items() if k != "issues"}
        row["passed"] = r.passed
        rows.append(row)
    return pd.DataFrame(rows)


def observability_issues(df: pd.DataFrame, opts: SelftestOptions) -> List[str]:
    if not opts.obs_gate or df.empty:
        return []
    issues: List[str] = []
    avg = df.mean(numeric_only=True)
    if avg["top1_share"] > opts.obs_max_top1_share:
        issues.append(f"avg top1 share too high: {avg['top1_share']:.3f} > {opts.obs_max_top1_share}")
    if avg["hhi"] > opts.obs_max_hhi:
        issues.append(f"avg hhi too high: {avg['hhi']:.3f} > {opts.obs_max_hhi}")
    if avg["budget_skip_ratio"] > opts.obs_max_budget_skip_ratio:
        issues.append(f"avg budget skip ratio too high: {avg['budget_skip_ratio']:.3f} > {opts.obs_max_budget_skip_ratio}")
    if avg["max_budget_skip_streak"] > opts.obs_max_budget_skip_streak:
        issues.append(
            f"avg max budget skip streak too high: {avg['max_budget_skip_streak']:.2f} > {opts.obs_max_budget_skip_streak}")
    if avg["active_route_nodes"] < opts.obs_min_active_route_nodes:
        issues.append(
            f"avg active route nodes too low: {avg['active_route_nodes']:.2f} < {opts.obs_min_active_route_nodes}")
    return issues


def print_summary(results: Sequence[TrialResult], opts: SelftestOptions) -> bool:
    """Print the report; returns True when the run should fail."""
    df = results_frame(results)
    avg = df.mean(numeric_only=True)
    failed_trials = [r for r in results if not r.passed]
    allowed = math.floor(len(results) * opts.max_failed_trial_ratio)
    t = opts.tick

    print("--- Sim Selftest ---")
    print(f"steps={opts.steps}, trials={opts.trials}, clear_every={t.clear_every}, "
          f"add_nodes_at={','.join(str(s) for s in opts.add_nodes_at)}, client_balance={opts.client_balance:g}")
    print(f"route_near_best_ratio={t.route_near_best_ratio}, route_temperature={t.route_temperature}, "
          f"adaptive_delta_floor={t.adaptive_delta_floor}, max_payment_ratio={t.max_payment_ratio}, "
          f"budget_refill_threshold={t.budget_refill_threshold}, "
          f"arrival_base={t.arrival_base_min}-{t.arrival_base_max}, arrival_burst_prob={t.arrival_burst_prob}, "
          f"arrival_burst={t.arrival_burst_min}-{t.arrival_burst_max}, "
          f"processing_delay={t.processing_delay_min}-{t.processing_delay_max}")
    print(f"gate min_commit_rate={opts.min_commit_rate}, max_failure_rate={opts.max_failure_rate}, "
          f"min_routes_per_step={opts.min_routes_per_step}, max_failed_trial_ratio={opts.max_failed_trial_ratio}")
    cols = ["committed", "failed", "routes", "commit_rate", "failure_rate", "routes_per_step", "budget_skips",
            "isolated", "client_balance", "top1_share", "hhi", "budget_skip_ratio", "max_budget_skip_streak",
            "active_route_nodes"]
    print(avg[cols].rename(lambda c: f"avg {c}").round(3).to_string())
    print(f"failed trials={len(failed_trials)}/{len(results)} (allowed={allowed})")

    obs = observability_issues(df, opts)
    if obs:
        print("[OBS_FAIL] observable gates not satisfied")
        for issue in obs:
            print(f"  - {issue}")

    for r in results:
        if not opts.verbose and r.passed:
            continue
        status = "PASS" if r.passed else "FAIL"
        print(f"[{status}] trial={r.trial} committed={r.committed} failed={r.failed} routes={r.routes} "
              f"commit_rate={r.commit_rate:.3f} failure_rate={r.failure_rate:.3f} "
              f"routes_per_step={r.routes_per_step:.3f} budget_skips={r.budget_skips} "
              f"top1={r.top1_share:.3f} hhi={r.hhi:.3f} active_route_nodes={r.active_route_nodes} "
              f"isolated={r.isolated} client={r.client_balance:.2f}")
        for issue in r.issues:
            print(f"  - {issue}")

    return len(failed_trials) > allowed or bool(obs)


def _parse_steps(raw: str) -> List[int]:
    steps = set()
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            steps.add(int(part))
    return sorted(steps)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Monte-Carlo selftest of the autonomous credit network")
    p.add_argument("--steps", type=int, default=100)
    p.add_argument("--trials", type=int, default=30)
    p.add_argument("--clear-every", type=int, default=8)
    p.add_argument("--add-nodes-at", type=_parse_steps, default=[20, 40, 60],
                   help="comma separated steps at which a bootstrapped node joins")
    p.add_argument("--route-near-best-ratio", type=float, default=0.75)
    p.add_argument("--route-temperature", type=float, default=0.35)
    p.add_argument("--adaptive-delta-floor", type=int, default=8)
    p.add_argument("--max-payment-ratio", type=float, default=0.08)
    p.add_argument("--budget-refill-threshold", type=float, default=9000.0)
    p.add_argument("--arrival-base-min", type=int, default=2)
    p.add_argument("--arrival-base-max", type=int, default=3)
    p.add_argument("--arrival-burst-prob", type=float, default=0.18)
    p.add_argument("--arrival-burst-min", type=int, default=2)
    p.add_argument("--arrival-burst-max", type=int, default=4)
    p.add_argument("--processing-delay-min", type=int, default=1)
    p.add_argument("--processing-delay-max", type=int, default=3)
    p.add_argument("--client-balance", type=float, default=1_000_000.0)
    p.add_argument("--min-commit-rate", type=float, default=0.82)
    p.add_argument("--max-failure-rate", type=float, default=0.18)
    p.add_argument("--min-routes-per-step", type=float, default=1.8)
    p.add_argument("--max-failed-trial-ratio", type=float, default=0.05)
    p.add_argument("--verbose", action="store_true", help="print every trial, not only failures")
    p.add_argument("--obs-gate", action="store_true", help="enable the route concentration / budget gates")
    p.add_argument("--obs-max-top1-share", type=float, default=1.0)
    p.add_argument("--obs-max-hhi", type=float, default=1.0)
    p.add_argument("--obs-max-budget-skip-ratio", type=float, default=1.0)
    p.add_argument("--obs-max-budget-skip-streak", type=float, default=1_000_000.0)
    p.add_argument("--obs-min-active-route-nodes", type=float, default=0.0)
    p.add_argument("--log-level", default="WARNING")
    return p


def _clamp01(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def options_from_args(args: argparse.Namespace) -> SelftestOptions:
    tick = AutoTickOptions(
        clear_every=args.clear_every,
        route_near_best_ratio=args.route_near_best_ratio,
        route_temperature=max(0.001, args.route_temperature),
        adaptive_delta_floor=args.adaptive_delta_floor,
        max_payment_ratio=args.max_payment_ratio,
        budget_refill_threshold=args.budget_refill_threshold,
        arrival_base_min=args.arrival_base_min,
        arrival_base_max=args.arrival_base_max,
        arrival_burst_prob=args.arrival_burst_prob,
        arrival_burst_min=args.arrival_burst_min,
        arrival_burst_max=args.arrival_burst_max,
        processing_delay_min=args.processing_delay_min,
        processing_delay_max=args.processing_delay_max,
    ).normalized()
    return SelftestOptions(
        steps=max(1, args.steps),
        trials=max(1, args.trials),
        add_nodes_at=list(args.add_nodes_at),
        client_balance=max(1.0, args.client_balance),
        tick=tick,
        min_commit_rate=_clamp01(args.min_commit_rate),
        max_failure_rate=_clamp01(args.max_failure_rate),
        min_routes_per_step=max(0.0, args.min_routes_per_step),
        max_failed_trial_ratio=_clamp01(args.max_failed_trial_ratio),
        obs_gate=args.obs_gate,
        obs_max_top1_share=args.obs_max_top1_share,
        obs_max_hhi=args.obs_max_hhi,
        obs_max_budget_skip_ratio=args.obs_max_budget_skip_ratio,
        obs_max_budget_skip_streak=args.obs_max_budget_skip_streak,
        obs_min_active_route_nodes=args.obs_min_active_route_nodes,
        verbose=args.verbose,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    opts = options_from_args(args)
    logger.info("running %d trials of %d steps", opts.trials, opts.steps)
    results = [run_trial(trial, opts) for trial in range(1, opts.trials + 1)]
    return 1 if print_summary(results, opts) else 0


if __name__ == "__main__":
    sys.exit(main())
