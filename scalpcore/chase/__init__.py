"""Pure chase-price strategies."""

from scalpcore.chase.strategies import (
    INDEX_SYMBOLS,
    TIME_WEIGHT_HORIZON_MS,
    ChaseContext,
    ChaseStrategy,
    compute_price,
    compute_slippage,
    delta_weight,
    list_strategies,
    step_size,
    time_weight,
    validate_chase_price,
)

__all__ = [
    "INDEX_SYMBOLS",
    "TIME_WEIGHT_HORIZON_MS",
    "ChaseContext",
    "ChaseStrategy",
    "compute_price",
    "compute_slippage",
    "delta_weight",
    "list_strategies",
    "step_size",
    "time_weight",
    "validate_chase_price",
]
