"""
Deterministic 32-bit linear congruential generator.

The generator state is a plain int carried inside ``SimulationState.rng_state``
so a run can be replayed exactly from a snapshot. Engine code never touches
the ``random`` module.
"""
from __future__ import annotations
from typing import Tuple
import math

_MASK32 = 0xFFFFFFFF
_MULTIPLIER = 1664525
_INCREMENT = 1013904223
_FALLBACK_SEED = 0x6D2B79F5
_GOLDEN = 0x9E3779B1


def normalize_seed(seed: int) -> int:
    normalized = int(seed) & _MASK32
    return _FALLBACK_SEED if normalized == 0 else normalized


def next_random_unit(seed: int) -> Tuple[int, float]:
    """Advance the generator; returns (next_seed, value in [0, 1))."""
    next_seed = (int(seed) * _MULTIPLIER + _INCREMENT) & _MASK32
    return next_seed, next_seed / 4294967296.0


def random_int_from_unit(lo: float, hi: float, unit: float) -> int:
    """Map a unit draw onto the inclusive integer range [lo, hi]."""
    lo_i = math.ceil(lo)
    hi_i = math.floor(hi)
    return math.floor(unit * (hi_i - lo_i + 1)) + lo_i


def derive_trial_seed(base_seed: int, trial: int) -> int:
    mixed = (int(base_seed) ^ ((int(trial) * _GOLDEN) & _MASK32)) & _MASK32
    return normalize_seed(mixed)
