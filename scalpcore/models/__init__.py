"""Data models for market ticks and order records."""

from scalpcore.models.market_data import Greeks, MarketSnapshot, MarketTick
from scalpcore.models.orders import BracketGroup, OrderRecord, OrderStatus

__all__ = [
    "BracketGroup",
    "Greeks",
    "MarketSnapshot",
    "MarketTick",
    "OrderRecord",
    "OrderStatus",
]
