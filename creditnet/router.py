from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence
import math

from .amm import get_effective_price
from .config import DIVERSIFICATION_WINDOW, OVERFLOW_DELTA, OVERFLOW_PRICE_THRESHOLD
from .core import AgentState, LedgerEntry

COLD_START_OUTCOMES = 12
COLD_START_PREMIUM = 1.4
LOAD_PREMIUM = 0.35
DEFAULT_TEMPERATURE = 0.08

RandomFn = Callable[[], float]


@dataclass(frozen=True)
class RoutePolicy:
    near_best_ratio: float = 0.0
    temperature: float = DEFAULT_TEMPERATURE


@dataclass
class RouteResult:
    selected_agent: Optional[str]
    prices: Dict[str, float]
    reason: str

    @property
    def ok(self) -> bool:
        return self.selected_agent is not None


def _resolve_candidates(agents: Dict[str, AgentState], candidates: Optional[Sequence[str]]) -> List[str]:
    if candidates:
        return list(candidates)
    return list(agents.keys())


def compare_prices(
    agents: Dict[str, AgentState],
    delta: float,
    candidates: Optional[Sequence[str]] = None,
) -> Dict[str, float]:
    """
    Quote every candidate. Isolated, saturated or quota-starved agents quote
    +inf; the rest quote P_eff scaled by a cold-start and a load premium.
    """
    prices: Dict[str, float] = {}
    for aid in _resolve_candidates(agents, candidates):
        agent = agents.get(aid)
        if agent is None:
            prices[aid] = math.inf
            continue
        unavailable = (
            agent.status == "isolated"
            or agent.active_tasks >= agent.capacity
            or agent.free_quota <= delta
        )
        if unavailable:
            prices[aid] = math.inf
            continue

        base_price = get_effective_price(agent, delta)
        confidence = min(1.0, agent.outcomes / COLD_START_OUTCOMES)
        warmup_multiplier = 1.0 + (1.0 - confidence) * COLD_START_PREMIUM
        utilization = agent.active_tasks / agent.capacity if agent.capacity > 0 else 1.0
        load_multiplier = 1.0 + max(0.0, utilization) * LOAD_PREMIUM
        prices[aid] = base_price * warmup_multiplier * load_multiplier
    return prices


def _sample_weighted(
    candidates: List[str],
    prices: Dict[str, float],
    best_price: float,
    unit: float,
    temperature: float,
) -> str:
    safe_best = max(best_price, 1e-9)
    safe_temp = max(temperature, 1e-6)
    weights = [math.exp(-max(0.0, prices[aid] - best_price) / (safe_best * safe_temp)) for aid in candidates]
    total = sum(weights)
    if not math.isfinite(total) or total <= 0.0:
        return candidates[int(unit * len(candidates))]
    target = unit * total
    cumulative = 0.0
    for aid, weight in zip(candidates, weights):
        cumulative += weight
        if target <= cumulative:
            return aid
    return candidates[-1]


def route_task(
    agents: Dict[str, AgentState],
    delta: float,
    candidates: Optional[Sequence[str]],
    next_random: RandomFn,
    policy: Optional[RoutePolicy] = None,
) -> RouteResult:
    """
    Near-best stochastic routing: every finite quote within
    best * (1 + near_best_ratio) is eligible, sampled with Boltzmann weights
    exp(-(p - best) / (best * temperature)). A ratio of 0 picks the cheapest
    agent and breaks exact ties uniformly.
    """
    policy = policy or RoutePolicy()
    ids = _resolve_candidates(agents, candidates)
    prices = compare_prices(agents, delta, ids)

    finite = [aid for aid in ids if math.isfinite(prices[aid])]
    if not finite:
        return RouteResult(selected_agent=None, prices=prices, reason="no available node: capacity or quota exhausted")

    best_price = min(prices[aid] for aid in finite)
    near_best_ratio = min(max(policy.near_best_ratio, 0.0), 1.0)
    threshold = best_price * (1.0 + near_best_ratio)
    pool = [aid for aid in finite if prices[aid] <= threshold + 1e-9] or finite
    selected = _sample_weighted(pool, prices, best_price, next_random(), policy.temperature)

    if len(pool) > 1:
        if near_best_ratio > 0:
            reason = f"near-best sample ({len(pool)}/{len(finite)}), picked {selected}"
        else:
            reason = f"tied lowest quote ({len(pool)}), picked {selected} at random"
    else:
        reason = f"lowest effective price ({len(finite)} candidates): {selected} -> {best_price:.2f}"
    return RouteResult(selected_agent=selected, prices=prices, reason=reason)


def should_overflow(
    agent: AgentState,
    delta: float = OVERFLOW_DELTA,
    price_threshold: float = OVERFLOW_PRICE_THRESHOLD,
) -> bool:
    return get_effective_price(agent, delta) > price_threshold or agent.active_tasks >= agent.capacity


def apply_diversification_guard(
    ledger: Sequence[LedgerEntry],
    candidates: List[str],
    near_best_ratio: float,
    next_random: RandomFn,
    window: int = DIVERSIFICATION_WINDOW,
) -> List[str]:
    """
    Anti-monopoly filter for the autonomous loop. Looks at the latest routes
    among ``candidates`` and, when one agent holds more than its fair share,
    drops it from this arrival's pool with a probability that grows with the
    overshoot.
    """
    if len(candidates) <= 1:
        return candidates

    candidate_set = set(candidates)
    recent: List[str] = []
    for entry in reversed(ledger):
        if entry.action == "ROUTE" and entry.agent_id in candidate_set:
            recent.append(entry.agent_id)
            if len(recent) >= window:
                break
    recent.reverse()
    if len(recent) < max(6, len(candidates) * 2):
        return candidates

    counts: Dict[str, int] = {}
    for aid in recent:
        counts[aid] = counts.get(aid, 0) + 1
    dominant_id: Optional[str] = None
    dominant_count = 0
    for aid, count in counts.items():
        if count > dominant_count:
            dominant_id, dominant_count = aid, count
    if dominant_id is None:
        return candidates

    diversified = [aid for aid in candidates if aid != dominant_id]
    if not diversified:
        return candidates

    expected_share = 1.0 / len(candidates)
    dominant_share = dominant_count / len(recent)
    if dominant_share <= expected_share + 1e-9:
        return candidates

    relative_share = dominant_share / expected_share
    overshoot = (relative_share - 1.0) / relative_share
    if near_best_ratio <= 0 and dominant_share >= 0.6:
        return diversified
    weight = max(near_best_ratio, 0.2)
    diversify_prob = min(max(overshoot * (1.0 + weight), 0.0), 0.98)
    if next_random() >= diversify_prob:
        return candidates
    return diversified
