from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .amm import get_base_price
from .core import LedgerEntry, OPEN_STATUSES, SimulationState


def route_concentration(ledger: Sequence[LedgerEntry]) -> Tuple[float, float, int]:
    """(top1_share, hhi, active_nodes) over every ROUTE entry in the ledger."""
    counts: Dict[str, int] = {}
    for entry in ledger:
        if entry.action == "ROUTE":
            counts[entry.agent_id] = counts.get(entry.agent_id, 0) + 1
    if not counts:
        return 0.0, 0.0, 0
    shares = np.array(list(counts.values()), dtype=float)
    shares /= max(1.0, shares.sum())
    return float(shares.max()), float(np.square(shares).sum()), len(counts)


def network_row(state: SimulationState) -> Dict[str, Any]:
    statuses = [t.status for t in state.tasks]
    top1_share, hhi, active_nodes = route_concentration(state.ledger)
    row: Dict[str, Any] = {
        "tick": state.tick,
        "phase": state.phase,
        "client_balance": state.client_balance,
        "agents": len(state.agents),
        "isolated": sum(1 for a in state.agents.values() if a.status == "isolated"),
        "inflight": sum(1 for s in statuses if s in OPEN_STATUSES),
        "committed": statuses.count("COMMITTED"),
        "aborted": statuses.count("ABORTED"),
        "routes": sum(1 for e in state.ledger if e.action == "ROUTE"),
        "top1_share": top1_share,
        "hhi": hhi,
        "active_route_nodes": active_nodes,
    }
    stats = state.last_tick_stats
    if stats is not None and stats.tick == state.tick:
        for key, value in stats.to_dict().items():
            if key != "tick":
                row[key] = value
    return row


def agent_rows(state: SimulationState) -> List[Dict[str, Any]]:
    return [
        {
            "tick": state.tick,
            "phase": state.phase,
            "agent_id": aid,
            "status": agent.status,
            "quota": agent.quota,
            "reserved_quota": agent.reserved_quota,
            "y": agent.y,
            "base_price": get_base_price(agent),
            "f": agent.f,
            "s_hat": agent.s_hat,
            "active_tasks": agent.active_tasks,
            "balance": agent.balance,
            "trade_balance": agent.trade_balance,
        }
        for aid, agent in state.agents.items()
    ]


@dataclass
class MetricsStore:
    network_rows: List[Dict[str, Any]] = field(default_factory=list)
    agent_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_network(self, row: Dict[str, Any]) -> None:
        self.network_rows.append(row)

    def add_agent_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.agent_rows.extend(rows)

    def record(self, state: SimulationState) -> None:
        self.add_network(network_row(state))
        self.add_agent_rows(agent_rows(state))

    def network_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.network_rows)

    def agent_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.agent_rows)

    def has_phase(self, phase: int) -> bool:
        return any(row["phase"] == phase for row in self.network_rows)

    def truncate_after(self, phase: int) -> None:
        """Drop rows recorded past ``phase`` (after a rewind)."""
        self.network_rows = [row for row in self.network_rows if row["phase"] <= phase]
        self.agent_rows = [row for row in self.agent_rows if row["phase"] <= phase]
