from __future__ import annotations
from dataclasses import replace
from typing import Dict, Iterable, Optional
import logging

import numpy as np

from .config import DEFAULT_CLIENT_BALANCE, DEFAULT_SIM_SEED
from .core import AgentState, SimulationState
from .rng import normalize_seed

logger = logging.getLogger(__name__)

DEFAULT_AGENT_IDS = ("A", "B", "C")
COLD_NETWORK_OUTCOMES = 2.0


def create_agent_state(agent_id: str, label: Optional[str] = None) -> AgentState:
    quota = 1000.0
    return AgentState(
        id=agent_id,
        label=label or f"Agent-{agent_id}",
        quota=quota,
        reserved_quota=0.0,
        y=quota,
        k=100_000_000.0,
        f=0.0,
        s_hat=1.0,
        capacity=5,
        active_tasks=0,
        total_completed=0,
        total_failed=0,
        status="idle",
        trade_balance=0.0,
        balance=10_000.0,
        liquidation_ratio=-0.25,
    )


def initial_agents(ids: Iterable[str] = DEFAULT_AGENT_IDS) -> Dict[str, AgentState]:
    return {aid: create_agent_state(aid) for aid in ids}


def _median(values) -> float:
    return float(np.median(np.asarray(list(values), dtype=float)))


def create_bootstrapped_agent_state(
    agent_id: str,
    label: Optional[str],
    peers: Dict[str, AgentState],
) -> AgentState:
    """
    Starting state for a node joining a running network, derived from peer
    medians so the newcomer neither undercuts nor is priced out of the market.
    While the network itself is still cold (peers average < 2 outcomes) the
    newcomer gets the same defaults as a founding agent, lightly scaled.
    """
    base = create_agent_state(agent_id, label)
    peer_list = list(peers.values())
    if not peer_list:
        return base

    median_f = _median(a.f for a in peer_list)
    median_s = _median(a.s_hat for a in peer_list)
    median_quota = _median(a.quota for a in peer_list)
    median_capacity = _median(a.capacity for a in peer_list)
    avg_outcomes = float(np.mean([a.outcomes for a in peer_list]))

    if avg_outcomes < COLD_NETWORK_OUTCOMES:
        quota = float(max(400, min(1000, round(median_quota * 0.9))))
        capacity = int(max(2, min(base.capacity, round(median_capacity))))
        f = max(0.0, min(2.0, median_f))
        s_hat = max(0.7, min(1.0, median_s))
        balance = base.balance * 0.8
        branch = "cold"
    else:
        quota = float(max(400, min(900, round(median_quota * 0.7))))
        capacity = int(max(2, min(4, round(median_capacity * 0.6))))
        f = max(1.2, min(6.0, median_f * 0.8 + 1.0))
        s_hat = max(0.45, min(0.9, median_s * 0.9))
        balance = max(2_000.0, base.balance * 0.6)
        branch = "warm"

    agent = replace(base, quota=quota, y=quota, capacity=capacity, f=f, s_hat=s_hat, balance=balance)
    logger.info("bootstrapped %s (%s network): quota=%.0f capacity=%d f=%.2f s_hat=%.2f",
                agent_id, branch, quota, capacity, f, s_hat)
    return agent


def next_agent_id(agents: Dict[str, AgentState]) -> str:
    candidate = f"N{len(agents) + 1}"
    n = len(agents) + 1
    while candidate in agents:
        n += 1
        candidate = f"N{n}"
    return candidate


def build_initial_state(
    client_balance: float = DEFAULT_CLIENT_BALANCE,
    seed: int = DEFAULT_SIM_SEED,
    agents: Optional[Dict[str, AgentState]] = None,
    phase: int = 0,
) -> SimulationState:
    return SimulationState(
        agents=dict(agents) if agents is not None else initial_agents(),
        tasks=[],
        ledger=[],
        price_comparison=None,
        client_balance=float(client_balance),
        tick=0,
        phase=phase,
        rng_state=normalize_seed(seed),
        last_narrative="",
    )
