"""Declarative chase-price strategies.

Each strategy maps a ``ChaseContext`` to the next limit price. Strategies
are pure: no state, no I/O, identical context in means identical price
out, so they can be replayed against recorded order books.

Strategies:
- aggressive-linear: bid + step * attempt
- time-weighted: bid + min(spread/2, mid - bid) * time weight (30s ramp)
- spread-adaptive: linear with step scaled by spread width
- conservative-bounded: aggressive-linear capped at mid
- delta-weighted: linear with step scaled down for high |delta|
- hybrid-time-delta: delta- and time-scaled step, capped at mid
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from scalpcore.errors import UnknownStrategyError
from scalpcore.models.market_data import Greeks, MarketSnapshot

# Cash-settled index underlyings quoted in nickel increments
INDEX_SYMBOLS: tuple[str, ...] = ("SPX", "NDX", "RUT")
INDEX_STEP = 0.05
DEFAULT_STEP = 0.01

TIME_WEIGHT_HORIZON_MS = 30_000
NEUTRAL_DELTA = 0.5


@dataclass(frozen=True, slots=True)
class ChaseContext:
    """Inputs for one re-quote evaluation.

    Attributes:
        snapshot: Current market snapshot for the underlying
        attempt_number: Chase attempt (1-indexed)
        elapsed_ms: Milliseconds since the chase started
        underlying: Underlying symbol, selects the step size
        initial_limit_price: Limit price of the first submission
        greeks: Optional sensitivities (missing delta is treated as 0.5)
    """

    snapshot: MarketSnapshot
    attempt_number: int
    elapsed_ms: float
    underlying: str
    initial_limit_price: float
    greeks: Greeks | None = None

    def __post_init__(self) -> None:
        if self.attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1: {self.attempt_number}")


def step_size(underlying: str) -> float:
    """Price increment for one chase step on this underlying."""
    return INDEX_STEP if underlying.upper() in INDEX_SYMBOLS else DEFAULT_STEP


def time_weight(elapsed_ms: float) -> float:
    """Linear ramp over the time-weight horizon, clamped to [0, 1]."""
    return min(max(elapsed_ms / TIME_WEIGHT_HORIZON_MS, 0.0), 1.0)


def delta_weight(greeks: Greeks | None) -> float:
    """Step multiplier that backs off on deep in-the-money contracts."""
    delta = abs(greeks.delta) if greeks and greeks.delta else NEUTRAL_DELTA
    if delta > 0.7:
        return 0.5
    if delta > 0.5:
        return 0.75
    return 1.0


def _aggressive_linear(ctx: ChaseContext) -> float:
    return ctx.snapshot.bid + step_size(ctx.underlying) * ctx.attempt_number


def _time_weighted(ctx: ChaseContext) -> float:
    snap = ctx.snapshot
    if snap.spread > 0:
        max_adjustment = min(snap.spread * 0.5, snap.mid - snap.bid)
    else:
        max_adjustment = (snap.mid - snap.bid) * 0.5
    return snap.bid + max_adjustment * time_weight(ctx.elapsed_ms)


def _spread_adaptive(ctx: ChaseContext) -> float:
    spread = ctx.snapshot.ask - ctx.snapshot.bid
    if spread > 0.25:
        multiplier = 1.5
    elif spread > 0.10:
        multiplier = 1.2
    else:
        multiplier = 1.0
    return ctx.snapshot.bid + step_size(ctx.underlying) * multiplier * ctx.attempt_number


def _conservative_bounded(ctx: ChaseContext) -> float:
    return min(_aggressive_linear(ctx), ctx.snapshot.mid)


def _delta_weighted(ctx: ChaseContext) -> float:
    step = step_size(ctx.underlying) * delta_weight(ctx.greeks)
    return ctx.snapshot.bid + step * ctx.attempt_number


def _hybrid_time_delta(ctx: ChaseContext) -> float:
    step = (
        step_size(ctx.underlying)
        * delta_weight(ctx.greeks)
        * (1 + time_weight(ctx.elapsed_ms))
    )
    return min(ctx.snapshot.bid + step * ctx.attempt_number, ctx.snapshot.mid)


class ChaseStrategy(str, Enum):
    """Closed set of chase strategies."""

    AGGRESSIVE_LINEAR = "aggressive-linear"
    TIME_WEIGHTED = "time-weighted"
    SPREAD_ADAPTIVE = "spread-adaptive"
    CONSERVATIVE_BOUNDED = "conservative-bounded"
    DELTA_WEIGHTED = "delta-weighted"
    HYBRID_TIME_DELTA = "hybrid-time-delta"

    @classmethod
    def from_name(cls, name: str) -> ChaseStrategy:
        """Resolve a strategy by its configured name.

        Raises:
            UnknownStrategyError: If no strategy has this name.
        """
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise UnknownStrategyError(name) from None

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    def compute_price(self, context: ChaseContext) -> float:
        """Next limit price for this strategy."""
        return _HANDLERS[self](context)


_HANDLERS: dict[ChaseStrategy, Callable[[ChaseContext], float]] = {
    ChaseStrategy.AGGRESSIVE_LINEAR: _aggressive_linear,
    ChaseStrategy.TIME_WEIGHTED: _time_weighted,
    ChaseStrategy.SPREAD_ADAPTIVE: _spread_adaptive,
    ChaseStrategy.CONSERVATIVE_BOUNDED: _conservative_bounded,
    ChaseStrategy.DELTA_WEIGHTED: _delta_weighted,
    ChaseStrategy.HYBRID_TIME_DELTA: _hybrid_time_delta,
}

_DESCRIPTIONS: dict[ChaseStrategy, str] = {
    ChaseStrategy.AGGRESSIVE_LINEAR: "Fixed step per attempt (0.05 for index symbols, else 0.01)",
    ChaseStrategy.TIME_WEIGHTED: "More aggressive as time passes, up to 50% of spread",
    ChaseStrategy.SPREAD_ADAPTIVE: "Steps proportional to spread width",
    ChaseStrategy.CONSERVATIVE_BOUNDED: "Never chase beyond mid price",
    ChaseStrategy.DELTA_WEIGHTED: "Less aggressive for higher delta options",
    ChaseStrategy.HYBRID_TIME_DELTA: "Combines time weighting with delta sensitivity, capped at mid",
}


def compute_price(strategy: ChaseStrategy, context: ChaseContext) -> float:
    """Compute the next chase price for ``strategy``.

    Args:
        strategy: Strategy to evaluate
        context: Market and attempt snapshot

    Returns:
        Unclamped limit price. Callers must pass it through
        ``validate_chase_price`` before use.
    """
    return strategy.compute_price(context)


def list_strategies() -> list[ChaseStrategy]:
    """All available chase strategies."""
    return list(ChaseStrategy)


def validate_chase_price(
    computed_price: float,
    initial_price: float,
    max_slippage: float,
) -> float:
    """Cap a chase price at ``initial_price + max_slippage``."""
    return min(computed_price, initial_price + max_slippage)


def compute_slippage(initial_price: float, final_price: float) -> float:
    """Slippage paid over the initial limit (never negative)."""
    return max(0.0, final_price - initial_price)
