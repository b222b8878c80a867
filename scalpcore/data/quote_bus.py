"""Synthetic quote generator for simulation mode.

Random-walks a price per symbol and publishes ``MarketTick`` objects to
subscribers. Stands in for a live market data subscription.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable

from scalpcore.chase.strategies import step_size
from scalpcore.models.market_data import MarketTick

logger = logging.getLogger(__name__)

BASE_PRICES = {
    "SPX": 5100.00,
}
DEFAULT_PRICE = 450.00
PRICE_DRIFT = 0.001  # +/-0.05% per update

TickCallback = Callable[[MarketTick], Awaitable[None]]


class QuoteBus:
    """Publishes random-walk ticks for a set of symbols."""

    def __init__(
        self,
        symbols: tuple[str, ...] | list[str],
        update_interval: float = 0.5,
        rng: random.Random | None = None,
    ):
        self.update_interval = update_interval
        self._prices = {s: BASE_PRICES.get(s, DEFAULT_PRICE) for s in symbols}
        self._subscribers: dict[str, list[TickCallback]] = {}
        self._rng = rng or random.Random()
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def symbols(self) -> list[str]:
        return list(self._prices)

    def subscribe(self, symbol: str, callback: TickCallback) -> Callable[[], None]:
        """Register a tick callback for ``symbol``. Returns an unsubscribe function."""
        self._subscribers.setdefault(symbol, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(symbol, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def next_tick(self, symbol: str) -> MarketTick:
        """Advance the walk for ``symbol`` one step and return the tick."""
        base = self._prices[symbol]
        drift = (self._rng.random() - 0.5) * PRICE_DRIFT
        last = round(base * (1 + drift), 2)
        self._prices[symbol] = last

        half_spread = step_size(symbol)
        return MarketTick(
            symbol=symbol,
            last=last,
            bid=round(last - half_spread, 2),
            ask=round(last + half_spread, 2),
            timestamp=datetime.now(timezone.utc),
        )

    async def publish(self, tick: MarketTick) -> None:
        for callback in list(self._subscribers.get(tick.symbol, [])):
            try:
                await callback(tick)
            except Exception as e:
                logger.error(f"[QUOTES] Subscriber error for {tick.symbol}: {e}")

    async def start(self) -> None:
        """Start the background publishing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Quote bus started for {', '.join(self._prices)} "
            f"(interval: {self.update_interval}s)"
        )

    async def stop(self) -> None:
        """Stop the publishing loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Quote bus stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.update_interval)
                for symbol in list(self._prices):
                    await self.publish(self.next_tick(symbol))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[QUOTES] Error in quote loop: {e}")
