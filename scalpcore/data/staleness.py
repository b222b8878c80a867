"""Staleness detection for market ticks.

A chase tick is only evaluated against fresh data. Stale ticks are
skipped, never treated as a fill or cancel trigger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from scalpcore.errors import StaleDataError
from scalpcore.models.market_data import MarketSnapshot

logger = logging.getLogger(__name__)


class FreshnessLevel(str, Enum):
    """Data freshness classification."""

    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True)
class StalenessThresholds:
    """Configurable staleness thresholds in seconds."""

    quote: float = 5.0


class StalenessChecker:
    """Checks snapshot freshness against configured thresholds.

    Usage:
        checker = StalenessChecker(StalenessThresholds(quote=2.0))
        checker.ensure_fresh(snapshot)  # raises StaleDataError
    """

    def __init__(self, thresholds: StalenessThresholds | None = None):
        self.thresholds = thresholds or StalenessThresholds()

    def check_snapshot(
        self,
        snapshot: MarketSnapshot | None,
        now: datetime | None = None,
    ) -> FreshnessLevel:
        """Classify a snapshot as fresh, stale or missing.

        Args:
            snapshot: Snapshot to check (None counts as missing)
            now: Current time (defaults to UTC now)
        """
        if snapshot is None:
            return FreshnessLevel.MISSING
        if now is None:
            now = datetime.now(timezone.utc)

        if snapshot.age_seconds(now) <= self.thresholds.quote:
            return FreshnessLevel.FRESH
        return FreshnessLevel.STALE

    def is_fresh(self, snapshot: MarketSnapshot | None, now: datetime | None = None) -> bool:
        """Quick check if a snapshot is fresh."""
        return self.check_snapshot(snapshot, now) == FreshnessLevel.FRESH

    def ensure_fresh(self, snapshot: MarketSnapshot, now: datetime | None = None) -> None:
        """Raise if the snapshot is older than the quote threshold.

        Raises:
            StaleDataError: If the snapshot is stale.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        age = snapshot.age_seconds(now)
        if age > self.thresholds.quote:
            raise StaleDataError(snapshot.symbol, age, self.thresholds.quote)
