from dataclasses import dataclass, replace

DEFAULT_SIM_SEED = 20260228
DEFAULT_CLIENT_BALANCE = 80_000.0
AUTO_CLEAR_INTERVAL = 8
DEFAULT_BURN_RATE = 0.01

# Tick loop internals
INFLIGHT_BATCH_SIZE = 8
FRICTION_DECAY_PER_TICK = 0.06
COMMIT_FRICTION_DECAY = 0.03
UNISOLATE_FRICTION = 3.2
COMPENSATE_FRICTION_PENALTY = 0.8
DIVERSIFICATION_WINDOW = 24

# Overflow / backpressure
OVERFLOW_DELTA = 100.0
OVERFLOW_PRICE_THRESHOLD = 30_000.0
BACKPRESSURE_DELTA = 100.0


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


@dataclass
class AutoTickOptions:
    # Clearing cadence / settlement
    clear_every: int = 5
    burn_rate: float = DEFAULT_BURN_RATE

    # Task sizing
    min_delta: int = 40
    max_delta: int = 160
    adaptive_delta_floor: int = 0  # 0 disables the shrinking search

    # Routing
    route_near_best_ratio: float = 0.0  # 0 = cheapest only, ties broken uniformly
    route_temperature: float = 0.08

    # Client budget
    max_payment_ratio: float = 1.0  # share of client balance one task may cost
    budget_refill_threshold: float = 0.0  # 0 disables refills

    # Arrivals
    arrival_base_min: int = 2
    arrival_base_max: int = 3
    arrival_burst_prob: float = 0.18
    arrival_burst_min: int = 2
    arrival_burst_max: int = 4

    # Processing delay (ticks between dispatch and validation)
    processing_delay_min: int = 1
    processing_delay_max: int = 3

    suspend_arrivals: bool = False  # drain-only runs

    def normalized(self) -> "AutoTickOptions":
        base_min = max(1, int(self.arrival_base_min))
        burst_min = max(0, int(self.arrival_burst_min))
        delay_min = max(1, int(self.processing_delay_min))
        return replace(
            self,
            clear_every=max(1, int(self.clear_every)),
            route_near_best_ratio=_clamp(float(self.route_near_best_ratio), 0.0, 1.0),
            route_temperature=max(float(self.route_temperature), 1e-6),
            adaptive_delta_floor=max(0, int(self.adaptive_delta_floor)),
            max_payment_ratio=_clamp(float(self.max_payment_ratio), 0.05, 1.0),
            budget_refill_threshold=max(0.0, float(self.budget_refill_threshold)),
            arrival_base_min=base_min,
            arrival_base_max=max(base_min, int(self.arrival_base_max)),
            arrival_burst_prob=_clamp(float(self.arrival_burst_prob), 0.0, 1.0),
            arrival_burst_min=burst_min,
            arrival_burst_max=max(burst_min, int(self.arrival_burst_max)),
            processing_delay_min=delay_min,
            processing_delay_max=max(delay_min, int(self.processing_delay_max)),
        )


def interactive_options() -> AutoTickOptions:
    """Preset used by the interactive session and the dashboard."""
    return AutoTickOptions(
        clear_every=AUTO_CLEAR_INTERVAL,
        route_near_best_ratio=0.75,
        route_temperature=0.35,
        adaptive_delta_floor=8,
        max_payment_ratio=0.08,
        budget_refill_threshold=9000.0,
    )


@dataclass
class ClearingParams:
    surplus_tax_rate: float = 0.008
    deficit_fee_rate: float = 0.01
    threshold: float = 220.0
    liquidation_balance_floor: float = -3000.0
    liquidation_ratio_floor: float = -0.1
