from __future__ import annotations
from dataclasses import replace

from .core import AgentState, FRICTION_MAX, SCORE_MAX, SCORE_MIN

SCORE_SUCCESS_STEP = 0.035
SCORE_FAILURE_STEP = -0.06


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def apply_friction_penalty(agent: AgentState, penalty: float = 0.8, alpha: float = 1.0) -> AgentState:
    return replace(agent, f=_clamp(agent.f + alpha * penalty, 0.0, FRICTION_MAX))


def decay_friction(agent: AgentState, decay_rate: float = 0.05) -> AgentState:
    """Passive healing, applied once per tick."""
    return replace(agent, f=_clamp(agent.f * (1.0 - decay_rate), 0.0, FRICTION_MAX))


def update_score(agent: AgentState, success: bool) -> AgentState:
    # failures move the score further than successes
    step = SCORE_SUCCESS_STEP if success else SCORE_FAILURE_STEP
    return replace(agent, s_hat=_clamp(agent.s_hat + step, SCORE_MIN, SCORE_MAX))


def get_qos_multiplier(agent: AgentState) -> float:
    return (1.0 + agent.f) / max(agent.s_hat, 0.01)
