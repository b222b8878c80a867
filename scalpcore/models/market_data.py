"""Market data models consumed by the chase core.

Ticks arrive as ``{symbol, last, bid?, ask?, timestamp}`` and are turned
into an immutable ``MarketSnapshot`` before any chase evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True, slots=True)
class MarketTick:
    """Raw market data tick for one underlying.

    Attributes:
        symbol: Underlying symbol (e.g., "SPX")
        last: Last trade price
        bid: Best bid (None if the feed only carries last)
        ask: Best ask (None if the feed only carries last)
        timestamp: Source timestamp (UTC)
    """

    symbol: str
    last: float
    timestamp: datetime
    bid: float | None = None
    ask: float | None = None

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds elapsed since the tick's source timestamp."""
        if now is None:
            now = datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()


@dataclass(frozen=True, slots=True)
class Greeks:
    """Option sensitivities used as chase-aggressiveness inputs."""

    delta: float | None = None
    gamma: float | None = None
    theta: float | None = None


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """Immutable bid/ask/mid view of one underlying at one tick."""

    symbol: str
    mid: float
    bid: float
    ask: float
    spread: float
    timestamp: datetime

    @classmethod
    def from_tick(cls, tick: MarketTick) -> MarketSnapshot:
        """Derive a snapshot from a tick.

        Mid is ``(bid + ask) / 2`` when both sides are present, otherwise
        ``last`` stands in for mid and for the missing sides.
        """
        if tick.bid is not None and tick.ask is not None:
            bid, ask = tick.bid, tick.ask
            mid = (bid + ask) / 2
        else:
            mid = tick.last
            bid = tick.bid if tick.bid is not None else tick.last
            ask = tick.ask if tick.ask is not None else tick.last
        return cls(
            symbol=tick.symbol,
            mid=mid,
            bid=bid,
            ask=ask,
            spread=ask - bid,
            timestamp=tick.timestamp,
        )

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds elapsed since the snapshot's source timestamp."""
        if now is None:
            now = datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()
