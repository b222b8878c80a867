"""Broker submission boundary and a simulated broker.

The execution core only ever talks to a ``Broker``: ``submit`` an order
spec carrying the ledger's client order id, ``cancel`` a working order.
Fills arrive asynchronously through the ``on_fill`` callback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Protocol
from uuid import uuid4

from scalpcore.errors import SubmissionFailure
from scalpcore.models.market_data import MarketSnapshot

logger = logging.getLogger(__name__)

FillCallback = Callable[[str, float], Awaitable[None]]


@dataclass(frozen=True)
class OrderSpec:
    """Limit order sent to the broker.

    Attributes:
        client_order_id: Ledger id, lets the broker deduplicate retries
        trade_id: Owning trade
        symbol: Instrument symbol
        side: buy or sell
        quantity: Number of contracts
        limit_price: Limit price (trigger price for stop orders)
        replaces_broker_order_id: Working order to amend in place, if any
        order_type: limit, or stop for stop-loss exits
    """

    client_order_id: str
    trade_id: str
    symbol: str
    side: Literal["buy", "sell"]
    quantity: int
    limit_price: float
    replaces_broker_order_id: str | None = None
    order_type: Literal["limit", "stop"] = "limit"

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientOrderId": self.client_order_id,
            "tradeId": self.trade_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "limitPrice": round(self.limit_price, 4),
            "replacesBrokerOrderId": self.replaces_broker_order_id,
            "orderType": self.order_type,
        }


@dataclass
class SubmitResult:
    """Broker acknowledgement of a submission."""

    broker_order_id: str
    status: Literal["working", "filled"]
    fill_price: float | None = None


class BrokerRejection(SubmissionFailure):
    """Broker refused the order."""


class Broker(Protocol):
    """Async broker capability consumed by the trade manager."""

    on_fill: FillCallback | None

    async def submit(self, spec: OrderSpec) -> SubmitResult:
        """Submit or amend an order. Raises SubmissionFailure on rejection."""
        ...

    async def cancel(self, broker_order_id: str) -> bool:
        """Cancel a working order. False if it already filled."""
        ...


@dataclass
class MockOrder:
    """Simulated broker order."""

    id: str
    client_order_id: str
    symbol: str
    side: str
    quantity: int
    limit_price: float
    order_type: str = "limit"
    status: str = "working"
    filled_price: float | None = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filled_at: datetime | None = None


class MockBroker:
    """Simulated broker for simulation mode and tests.

    Simulates:
    - Client order id deduplication (a resubmitted id returns the original order)
    - Marketable limit orders fill instantly at the ask (buys) or bid (sells)
    - Resting orders fill when a later quote crosses them
    - Stop orders trigger once the market trades through the stop price
    - Rejections on demand via ``reject_next``

    Usage:
        broker = MockBroker()
        broker.update_quote(snapshot)
        result = await broker.submit(spec)
    """

    def __init__(self, on_fill: FillCallback | None = None):
        self.on_fill = on_fill
        self._orders: dict[str, MockOrder] = {}
        self._by_client_id: dict[str, str] = {}
        self._quotes: dict[str, MarketSnapshot] = {}
        self._reject_remaining = 0
        self._reject_reason = "Simulated rejection"
        self.submit_count = 0

        logger.info("MockBroker initialized")

    def reject_next(self, count: int = 1, reason: str = "Simulated rejection") -> None:
        """Reject the next ``count`` submissions."""
        self._reject_remaining = count
        self._reject_reason = reason

    def get_order(self, broker_order_id: str) -> MockOrder | None:
        return self._orders.get(broker_order_id)

    def get_orders(self) -> list[MockOrder]:
        return list(self._orders.values())

    def _marketable_price(self, order: MockOrder) -> float | None:
        quote = self._quotes.get(order.symbol)
        if quote is None:
            return None
        if order.order_type == "stop":
            if order.side == "buy" and quote.ask >= order.limit_price:
                return quote.ask
            if order.side == "sell" and quote.bid <= order.limit_price:
                return quote.bid
            return None
        if order.side == "buy" and order.limit_price >= quote.ask:
            return quote.ask
        if order.side == "sell" and order.limit_price <= quote.bid:
            return quote.bid
        return None

    def _fill(self, order: MockOrder, price: float) -> None:
        order.status = "filled"
        order.filled_price = price
        order.filled_at = datetime.now(timezone.utc)
        logger.info(
            f"[MOCK BROKER] FILLED {order.side.upper()} {order.quantity}x {order.symbol} "
            f"@ ${price:.2f} (order {order.id})"
        )

    async def submit(self, spec: OrderSpec) -> SubmitResult:
        """Submit a simulated limit order."""
        self.submit_count += 1

        existing_id = self._by_client_id.get(spec.client_order_id)
        if existing_id:
            existing = self._orders[existing_id]
            logger.warning(
                f"[MOCK BROKER] Duplicate client order id {spec.client_order_id}, "
                f"returning order {existing.id}"
            )
            return SubmitResult(
                broker_order_id=existing.id,
                status="filled" if existing.status == "filled" else "working",
                fill_price=existing.filled_price,
            )

        if self._reject_remaining > 0:
            self._reject_remaining -= 1
            raise BrokerRejection(self._reject_reason, spec.client_order_id)

        if spec.replaces_broker_order_id:
            replaced = self._orders.get(spec.replaces_broker_order_id)
            if replaced and replaced.status == "filled":
                raise BrokerRejection(
                    f"Order {replaced.id} already filled, cannot replace",
                    spec.client_order_id,
                )
            if replaced:
                replaced.status = "replaced"

        order = MockOrder(
            id=str(uuid4())[:8],
            client_order_id=spec.client_order_id,
            symbol=spec.symbol,
            side=spec.side,
            quantity=spec.quantity,
            limit_price=spec.limit_price,
            order_type=spec.order_type,
        )
        self._orders[order.id] = order
        self._by_client_id[spec.client_order_id] = order.id

        price = self._marketable_price(order)
        if price is not None:
            self._fill(order, price)
            return SubmitResult(broker_order_id=order.id, status="filled", fill_price=price)

        logger.info(
            f"[MOCK BROKER] WORKING {spec.order_type.upper()} {spec.side.upper()} "
            f"{spec.quantity}x {spec.symbol} "
            f"@ ${spec.limit_price:.2f} (order {order.id})"
        )
        return SubmitResult(broker_order_id=order.id, status="working")

    async def cancel(self, broker_order_id: str) -> bool:
        """Cancel a working order."""
        order = self._orders.get(broker_order_id)
        if order is None:
            raise SubmissionFailure(f"Unknown broker order {broker_order_id}")
        if order.status == "filled":
            return False
        order.status = "cancelled"
        logger.info(f"[MOCK BROKER] CANCELLED order {order.id}")
        return True

    def update_quote(self, snapshot: MarketSnapshot) -> list[MockOrder]:
        """Record a quote and fill any resting orders it crosses.

        Returns:
            Orders filled by this quote (callers await ``notify_fills``).
        """
        self._quotes[snapshot.symbol] = snapshot
        filled = []
        for order in self._orders.values():
            if order.status != "working" or order.symbol != snapshot.symbol:
                continue
            price = self._marketable_price(order)
            if price is not None:
                self._fill(order, price)
                filled.append(order)
        return filled

    async def notify_fills(self, orders: list[MockOrder]) -> None:
        """Deliver fill callbacks for orders filled by ``update_quote``."""
        if not self.on_fill:
            return
        for order in orders:
            try:
                await self.on_fill(order.id, order.filled_price or order.limit_price)
            except Exception as e:
                logger.error(f"[MOCK BROKER] on_fill callback error: {e}")
