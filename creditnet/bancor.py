"""
Periodic Bancor-style clearing.

Trade balances are pulled back toward the network mean: surplus beyond an
adaptive threshold is taxed, deficit beyond a (grace-scaled) threshold pays a
rebalancing fee. Agents with enough history whose balance falls through the
liquidation floors lose part of their quota and are isolated.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Literal, Optional
import math

import numpy as np

from .amm import sync_agent_y
from .config import ClearingParams
from .core import AgentState, FRICTION_MAX

SettlementType = Literal["TAX", "FEE", "LIQUIDATE", "NONE"]

DISPERSION_WEIGHT = 0.45
LIQUIDATION_MIN_OUTCOMES = 6
LIQUIDATION_QUOTA_SHARE = 0.1
LIQUIDATION_MIN_CUT = 10
LIQUIDATION_QUOTA_FLOOR = 100
LIQUIDATION_FRICTION = 1.5


@dataclass(frozen=True)
class BancorResult:
    agent: AgentState
    adjustment: float
    type: SettlementType
    reason: str


def _deficit_threshold(dynamic_threshold: float, outcomes: int) -> float:
    # newcomers get a grace band before deficits are charged
    if outcomes < 4:
        return dynamic_threshold * 2.5
    if outcomes < 10:
        return dynamic_threshold * 1.5
    return dynamic_threshold


def bancor_settle(
    agents: Dict[str, AgentState],
    params: Optional[ClearingParams] = None,
) -> Dict[str, BancorResult]:
    params = params or ClearingParams()
    results: Dict[str, BancorResult] = {}
    if not agents:
        return results

    ids = list(agents.keys())
    balances = np.array([agents[aid].trade_balance for aid in ids], dtype=float)
    avg_balance = float(balances.mean())
    avg_abs_deviation = float(np.abs(balances - avg_balance).mean())
    dynamic_threshold = max(params.threshold, avg_abs_deviation * DISPERSION_WEIGHT)

    for aid in ids:
        agent = agents[aid]
        deviation = agent.trade_balance - avg_balance
        deficit_threshold = _deficit_threshold(dynamic_threshold, agent.outcomes)
        settlement: SettlementType = "NONE"
        charge = 0.0
        reason = "within threshold"

        if deviation > dynamic_threshold:
            charge = (deviation - dynamic_threshold) * params.surplus_tax_rate
            settlement = "TAX"
            reason = "surplus over threshold"
        elif deviation < -deficit_threshold:
            charge = (abs(deviation) - deficit_threshold) * params.deficit_fee_rate
            settlement = "FEE"
            reason = "deficit over threshold (with startup grace)"

        trade_balance = agent.trade_balance
        if settlement == "TAX":
            trade_balance -= charge
        elif settlement == "FEE":
            trade_balance += charge
        next_agent = sync_agent_y(replace(agent, balance=agent.balance - charge, trade_balance=trade_balance))

        health_ratio = next_agent.balance / max(next_agent.quota, 1.0)
        should_liquidate = (
            next_agent.status != "isolated"
            and agent.outcomes >= LIQUIDATION_MIN_OUTCOMES
            and (next_agent.balance < params.liquidation_balance_floor
                 or health_ratio < params.liquidation_ratio_floor)
        )
        if should_liquidate:
            cut = max(LIQUIDATION_MIN_CUT, math.floor(next_agent.quota * LIQUIDATION_QUOTA_SHARE))
            quota_after = max(LIQUIDATION_QUOTA_FLOOR, next_agent.quota - cut)
            next_agent = sync_agent_y(replace(
                next_agent,
                quota=quota_after,
                reserved_quota=min(next_agent.reserved_quota, quota_after),
                status="isolated",
                f=min(next_agent.f + LIQUIDATION_FRICTION, FRICTION_MAX),
            ))
            settlement = "LIQUIDATE"
            reason = "liquidation threshold breached"

        results[aid] = BancorResult(agent=next_agent, adjustment=-charge, type=settlement, reason=reason)
    return results
