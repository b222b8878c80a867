"""Order ledger records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


class OrderStatus(str, Enum):
    """Submission status of one logical order."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


# Forward-only status edges. FAILED/PENDING -> SUBMITTED is the retry edge.
ALLOWED_STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.SUBMITTED, OrderStatus.FAILED, OrderStatus.DUPLICATE}
    ),
    OrderStatus.SUBMITTED: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.DUPLICATE}
    ),
    # CONFIRMED -> FAILED covers a working order the broker later rejects
    OrderStatus.CONFIRMED: frozenset({OrderStatus.FAILED}),
    # FAILED -> CONFIRMED covers a broker ack that lands after a timeout
    OrderStatus.FAILED: frozenset({OrderStatus.SUBMITTED, OrderStatus.CONFIRMED}),
    OrderStatus.DUPLICATE: frozenset(),
}


@dataclass
class OrderRecord:
    """One broker-bound submission tracked by the ledger.

    Attributes:
        client_order_id: Client-generated id, immutable once created
        trade_id: Owning trade
        status: Current submission status
        submitted_at: When the first submission was dispatched (UTC)
        confirmed_at: When the broker acknowledged the order
        broker_order_id: Broker-assigned order id
        retry_count: Retries of this same logical order
        error: Last failure message
        metadata: Free-form context (limit price, attempt number, ...)
    """

    client_order_id: str
    trade_id: str
    status: OrderStatus
    submitted_at: datetime
    confirmed_at: datetime | None = None
    broker_order_id: str | None = None
    retry_count: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        """True while the broker may still act on this order."""
        return self.status in (OrderStatus.SUBMITTED, OrderStatus.CONFIRMED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "clientOrderId": self.client_order_id,
            "tradeId": self.trade_id,
            "status": self.status.value,
            "submittedAt": self.submitted_at.isoformat(),
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "brokerOrderId": self.broker_order_id,
            "retryCount": self.retry_count,
            "error": self.error,
            "metadata": self.metadata,
        }


BracketLeg = Literal["TP", "SL"]


@dataclass
class BracketGroup:
    """Take-profit / stop-loss exit orders linked to a filled entry order.

    Keyed by the entry (trigger) broker order id. Whichever leg fills first
    closes the trade; the other leg is cancelled.

    Attributes:
        trigger_order_id: Broker order id of the filled entry order
        trade_id: Owning trade
        side: Side of the entry order (exits go the other way)
        entry_price: Entry fill price the percentages apply to
        tp_pct: Take profit distance, percent of entry
        sl_pct: Stop loss distance, percent of entry
        tp_order_id: Broker order id of the take-profit leg
        sl_order_id: Broker order id of the stop-loss leg
        filled_leg: TP or SL once one leg has filled
    """

    trigger_order_id: str
    trade_id: str
    side: Literal["buy", "sell"]
    entry_price: float
    tp_pct: float
    sl_pct: float
    tp_order_id: str | None = None
    sl_order_id: str | None = None
    filled_leg: BracketLeg | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.tp_pct <= 0 or self.sl_pct <= 0:
            raise ValueError(
                f"Bracket percentages must be positive: tp={self.tp_pct}, sl={self.sl_pct}"
            )

    @property
    def exit_side(self) -> Literal["buy", "sell"]:
        return "sell" if self.side == "buy" else "buy"

    @property
    def take_profit_price(self) -> float:
        direction = 1 if self.side == "buy" else -1
        return round(self.entry_price * (1 + direction * self.tp_pct / 100), 4)

    @property
    def stop_loss_price(self) -> float:
        direction = 1 if self.side == "buy" else -1
        return round(self.entry_price * (1 - direction * self.sl_pct / 100), 4)

    def leg_for(self, broker_order_id: str) -> BracketLeg | None:
        """Which leg a broker order id belongs to, if any."""
        if broker_order_id == self.tp_order_id:
            return "TP"
        if broker_order_id == self.sl_order_id:
            return "SL"
        return None

    def open_leg_ids(self) -> list[str]:
        """Broker ids of legs that have not filled."""
        legs = [("TP", self.tp_order_id), ("SL", self.sl_order_id)]
        return [oid for leg, oid in legs if oid and leg != self.filled_leg]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "triggerOrderId": self.trigger_order_id,
            "tradeId": self.trade_id,
            "side": self.side,
            "entryPrice": self.entry_price,
            "tpPct": self.tp_pct,
            "slPct": self.sl_pct,
            "takeProfitPrice": self.take_profit_price,
            "stopLossPrice": self.stop_loss_price,
            "tpOrderId": self.tp_order_id,
            "slOrderId": self.sl_order_id,
            "filledLeg": self.filled_leg,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }
