"""Trade lifecycle state machine.

Drives one trade from order entry to a terminal state:

    PENDING -> WORKING -> CHASING -> FILLED -> CLOSED
                  \\          \\
                   +----------+--> CANCELLED

The lifecycle never performs I/O. Each event handler returns the broker
commands (``SubmitOrder`` / ``CancelOrder``) the caller must execute; broker
outcomes come back in as further events. While chasing, every fresh tick
asks the chase strategy for a price, clamps it to the slippage ceiling and
only dispatches a new submission when the price moved by more than the
tick tolerance and nothing is already in flight.

Errors raised while handling an event are caught at the trade boundary,
logged, and recorded on ``Trade.errors``; they never escape to the host.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal, Union

from scalpcore.chase.strategies import (
    ChaseContext,
    ChaseStrategy,
    compute_price,
    validate_chase_price,
)
from scalpcore.config import LifecycleConfig
from scalpcore.data.broker import OrderSpec
from scalpcore.data.staleness import StalenessChecker
from scalpcore.engine.order_ledger import OrderLedger
from scalpcore.errors import (
    InvalidTransitionError,
    NotFoundError,
    ScalpCoreError,
    StaleDataError,
    get_error_message,
)
from scalpcore.models.market_data import Greeks, MarketSnapshot, MarketTick
from scalpcore.models.orders import OrderRecord, OrderStatus

logger = logging.getLogger(__name__)


class TradeState(str, Enum):
    """Trade lifecycle states."""

    PENDING = "PENDING"
    WORKING = "WORKING"
    CHASING = "CHASING"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"


VALID_TRANSITIONS: dict[TradeState, frozenset[TradeState]] = {
    TradeState.PENDING: frozenset(
        {TradeState.WORKING, TradeState.FILLED, TradeState.CANCELLED}
    ),
    TradeState.WORKING: frozenset(
        {TradeState.CHASING, TradeState.FILLED, TradeState.CANCELLED}
    ),
    TradeState.CHASING: frozenset({TradeState.FILLED, TradeState.CANCELLED}),
    TradeState.FILLED: frozenset({TradeState.CLOSED}),
    TradeState.CANCELLED: frozenset(),
    TradeState.CLOSED: frozenset(),
}

ACTIVE_STATES = frozenset({TradeState.WORKING, TradeState.CHASING})


def is_valid_transition(from_state: TradeState, to_state: TradeState) -> bool:
    return to_state in VALID_TRANSITIONS[from_state]


def is_terminal_state(state: TradeState) -> bool:
    """True if no further transitions are allowed."""
    return not VALID_TRANSITIONS[state]


class ExitReason(str, Enum):
    """Why a filled position was closed."""

    TP = "TP"
    SL = "SL"
    TIME = "TIME"
    MANUAL = "MANUAL"


@dataclass
class ChaseInfo:
    """Chase bookkeeping for a trade."""

    initial_price: float
    strategy_name: str
    attempts: int = 0
    final_price: float | None = None
    total_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "initialPrice": self.initial_price,
            "finalPrice": self.final_price,
            "totalTimeMs": round(self.total_time_ms, 1),
            "strategy": self.strategy_name,
        }


@dataclass
class StateTransition:
    """One recorded state change."""

    trade_id: str
    from_state: TradeState
    to_state: TradeState
    timestamp: datetime
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tradeId": self.trade_id,
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class Trade:
    """A trade managed by the lifecycle.

    Attributes:
        trade_id: Unique trade id
        underlying: Underlying symbol, drives chase step size and tick routing
        symbol: Instrument sent to the broker (defaults to the underlying)
        side: buy or sell
        quantity: Contracts
        chase_info: Attempts, initial/final price, chase duration, strategy
        entry_price: Fill price once filled
        state: Current lifecycle state
        exit_reason: TP, SL, TIME or MANUAL once closed
        exit_price: Exit fill price once closed
    """

    trade_id: str
    underlying: str
    chase_info: ChaseInfo
    symbol: str = ""
    side: Literal["buy", "sell"] = "buy"
    quantity: int = 1
    entry_price: float | None = None
    state: TradeState = TradeState.PENDING
    exit_reason: ExitReason | None = None
    exit_price: float | None = None
    greeks: Greeks | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filled_at: datetime | None = None
    closed_at: datetime | None = None
    state_history: list[StateTransition] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.symbol:
            self.symbol = self.underlying
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be positive: {self.quantity}")
        if self.chase_info.initial_price <= 0:
            raise ValueError(f"Initial price must be positive: {self.chase_info.initial_price}")

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "tradeId": self.trade_id,
            "underlying": self.underlying,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "entryPrice": self.entry_price,
            "state": self.state.value,
            "exitReason": self.exit_reason.value if self.exit_reason else None,
            "exitPrice": self.exit_price,
            "chaseInfo": self.chase_info.to_dict(),
            "createdAt": self.created_at.isoformat(),
            "filledAt": self.filled_at.isoformat() if self.filled_at else None,
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
            "stateHistory": [t.to_dict() for t in self.state_history],
            "errors": list(self.errors),
            "metadata": self.metadata,
        }


# ----------------------------------------------------------------------
# Commands (lifecycle -> broker)
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class SubmitOrder:
    """Dispatch (or re-dispatch) an order to the broker."""

    trade_id: str
    spec: OrderSpec
    is_retry: bool = False
    attempt: int = 0


@dataclass(frozen=True)
class CancelOrder:
    """Ask the broker to cancel a working order."""

    trade_id: str
    broker_order_id: str
    reason: str


Command = Union[SubmitOrder, CancelOrder]


# ----------------------------------------------------------------------
# Events (market / broker / operator -> lifecycle)
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class StartTrade:
    pass


@dataclass(frozen=True)
class TickReceived:
    tick: MarketTick | MarketSnapshot


@dataclass(frozen=True)
class SubmissionConfirmed:
    client_order_id: str
    broker_order_id: str


@dataclass(frozen=True)
class SubmissionFailed:
    client_order_id: str
    error: str
    attempt: int | None = None


@dataclass(frozen=True)
class FillReceived:
    fill_price: float
    broker_order_id: str | None = None


@dataclass(frozen=True)
class CancelAcknowledged:
    broker_order_id: str


@dataclass(frozen=True)
class CancelRequested:
    reason: str = "user cancel"


@dataclass(frozen=True)
class TimeoutCheck:
    pass


@dataclass(frozen=True)
class CloseRequested:
    exit_reason: ExitReason
    exit_price: float


Event = Union[
    StartTrade,
    TickReceived,
    SubmissionConfirmed,
    SubmissionFailed,
    FillReceived,
    CancelAcknowledged,
    CancelRequested,
    TimeoutCheck,
    CloseRequested,
]

TransitionListener = Callable[[StateTransition], None]


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


class TradeLifecycle:
    """State machine for one trade.

    Usage:
        lifecycle = TradeLifecycle(trade, ledger, config, ChaseStrategy.TIME_WEIGHTED)
        commands = lifecycle.start()
        # execute commands, then feed results back:
        lifecycle.on_submission_confirmed(client_order_id, broker_order_id)
        commands = lifecycle.on_tick(tick)
    """

    def __init__(
        self,
        trade: Trade,
        ledger: OrderLedger,
        config: LifecycleConfig,
        strategy: ChaseStrategy,
        staleness: StalenessChecker | None = None,
    ):
        self.trade = trade
        self.config = config
        self.strategy = strategy
        self._ledger = ledger
        self._staleness = staleness or StalenessChecker()
        self._listeners: list[TransitionListener] = []

        self._active_spec: OrderSpec | None = None
        self._live_broker_order_id: str | None = None
        self._filled_broker_order_id: str | None = None
        self._filled_client_order_id: str | None = None
        self._superseded_broker_ids: set[str] = set()
        self._last_price: float | None = None
        self._first_submitted_at: datetime | None = None
        self._dispatched_at: datetime | None = None
        self._working_since: datetime | None = None
        self._chase_started_at: datetime | None = None
        self._last_snapshot: MarketSnapshot | None = None
        self._consecutive_failures = 0
        self._cancel_requested = False
        self._cancel_reason: str | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> TradeState:
        return self.trade.state

    @property
    def active_order_id(self) -> str | None:
        return self._active_spec.client_order_id if self._active_spec else None

    @property
    def live_broker_order_id(self) -> str | None:
        return self._live_broker_order_id

    @property
    def filled_broker_order_id(self) -> str | None:
        return self._filled_broker_order_id

    @property
    def last_price(self) -> float | None:
        return self._last_price

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Subscribe to state transitions. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Trade boundary
    # ------------------------------------------------------------------

    def handle(self, event: Event, now: datetime | None = None) -> list[Command]:
        """Dispatch one event. Never raises."""
        now = _now(now)
        try:
            if isinstance(event, StartTrade):
                return self.start(now)
            if isinstance(event, TickReceived):
                return self.on_tick(event.tick, now)
            if isinstance(event, SubmissionConfirmed):
                return self.on_submission_confirmed(
                    event.client_order_id, event.broker_order_id, now
                )
            if isinstance(event, SubmissionFailed):
                return self.on_submission_failed(
                    event.client_order_id, event.error, now, attempt=event.attempt
                )
            if isinstance(event, FillReceived):
                return self.on_fill(event.fill_price, now, event.broker_order_id)
            if isinstance(event, CancelAcknowledged):
                return self.on_cancel_ack(event.broker_order_id, now)
            if isinstance(event, CancelRequested):
                return self.request_cancel(event.reason, now)
            if isinstance(event, TimeoutCheck):
                return self.check_timeouts(now)
            if isinstance(event, CloseRequested):
                self.close(event.exit_reason, event.exit_price, now)
                return []
            raise TypeError(f"Unsupported event: {event!r}")
        except ScalpCoreError as e:
            self._surface(e)
            return []
        except Exception as e:
            logger.exception(f"[TRADE] {self.trade.trade_id} failed handling {event!r}")
            self._surface(e)
            if self.trade.is_terminal or self.trade.state == TradeState.FILLED:
                return []
            try:
                return self._begin_cancel(f"internal error: {get_error_message(e)}", now)
            except ScalpCoreError as inner:
                self._surface(inner)
                return []

    def _surface(self, error: BaseException | str) -> None:
        message = get_error_message(error)
        self.trade.errors.append(message)
        logger.error(f"[TRADE] {self.trade.trade_id}: {message}")

    def _transition(
        self,
        to_state: TradeState,
        now: datetime,
        reason: str | None = None,
        error: str | None = None,
    ) -> None:
        from_state = self.trade.state
        if not is_valid_transition(from_state, to_state):
            raise InvalidTransitionError(self.trade.trade_id, from_state.value, to_state.value)

        transition = StateTransition(
            trade_id=self.trade.trade_id,
            from_state=from_state,
            to_state=to_state,
            timestamp=now,
            reason=reason,
            error=error,
        )
        self.trade.state = to_state
        self.trade.state_history.append(transition)

        logger.info(
            f"[TRADE] {self.trade.trade_id} {from_state.value} -> {to_state.value}"
            + (f" ({reason})" if reason else "")
        )

        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception as e:
                logger.error(f"[TRADE] Transition listener error: {e}")

    # ------------------------------------------------------------------
    # Submission helpers
    # ------------------------------------------------------------------

    def _submission_in_flight(self) -> bool:
        if self.active_order_id is None:
            return False
        record = self._ledger.get_order(self.active_order_id)
        return record is not None and record.status == OrderStatus.SUBMITTED

    def _submission_timed_out(self, now: datetime) -> float | None:
        """Seconds the in-flight submission has gone unanswered, once past the limit."""
        if self.trade.state not in (TradeState.PENDING, *ACTIVE_STATES):
            return None
        if self._dispatched_at is None or not self._submission_in_flight():
            return None
        waited = (now - self._dispatched_at).total_seconds()
        return waited if waited >= self.config.submit_timeout_seconds else None

    def _is_filled_order(self, client_order_id: str, broker_order_id: str | None) -> bool:
        if self._filled_broker_order_id is not None:
            return broker_order_id == self._filled_broker_order_id
        return client_order_id == self._filled_client_order_id

    def _dispatch(self, price: float, now: datetime) -> list[Command]:
        """Create a new logical order at ``price`` and emit its submission."""
        commands: list[Command] = []
        client_order_id = self._ledger.new_client_order_id()

        replaces = None
        previous = self._live_broker_order_id
        if previous:
            if self.config.amend_in_place:
                replaces = previous
            else:
                commands.append(
                    CancelOrder(self.trade.trade_id, previous, reason="superseded by re-quote")
                )
                self._live_broker_order_id = None
            self._superseded_broker_ids.add(previous)

        record = OrderRecord(
            client_order_id=client_order_id,
            trade_id=self.trade.trade_id,
            status=OrderStatus.SUBMITTED,
            submitted_at=now,
            metadata={
                "limit_price": price,
                "attempt": self.trade.chase_info.attempts,
                "replaces": replaces,
            },
        )
        if not self._ledger.try_record_submission(record):
            return []

        spec = OrderSpec(
            client_order_id=client_order_id,
            trade_id=self.trade.trade_id,
            symbol=self.trade.symbol,
            side=self.trade.side,
            quantity=self.trade.quantity,
            limit_price=price,
            replaces_broker_order_id=replaces,
        )
        self._active_spec = spec
        self._last_price = price
        self._consecutive_failures = 0
        self._dispatched_at = now
        if self._first_submitted_at is None:
            self._first_submitted_at = now

        commands.append(SubmitOrder(self.trade.trade_id, spec))
        return commands

    def _retry(self, spec: OrderSpec, now: datetime) -> list[Command]:
        """Resubmit ``spec`` under its existing client order id."""
        retry_count = self._ledger.increment_retry(spec.client_order_id)

        record = OrderRecord(
            client_order_id=spec.client_order_id,
            trade_id=self.trade.trade_id,
            status=OrderStatus.SUBMITTED,
            submitted_at=now,
            retry_count=retry_count,
        )
        if not self._ledger.try_record_submission(record):
            return []

        logger.info(
            f"[TRADE] {self.trade.trade_id} retrying {spec.client_order_id} "
            f"(retry {retry_count}/{self.config.max_submit_retries - 1})"
        )
        self._dispatched_at = now
        return [SubmitOrder(self.trade.trade_id, spec, is_retry=True, attempt=retry_count)]

    def _begin_cancel(self, reason: str, now: datetime, error: str | None = None) -> list[Command]:
        """Cancel the trade, resolving against whatever the broker holds."""
        if self._cancel_requested:
            return []
        self._cancel_requested = True
        self._cancel_reason = reason

        if self._submission_in_flight():
            logger.info(
                f"[TRADE] {self.trade.trade_id} cancel queued behind in-flight "
                f"submission {self.active_order_id}"
            )
            return []

        if self._live_broker_order_id:
            return [CancelOrder(self.trade.trade_id, self._live_broker_order_id, reason)]

        self._transition(TradeState.CANCELLED, now, reason=reason, error=error)
        return []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def start(self, now: datetime | None = None) -> list[Command]:
        """Submit the initial limit order."""
        now = _now(now)
        if self.trade.state != TradeState.PENDING or self.active_order_id is not None:
            logger.warning(f"[TRADE] {self.trade.trade_id} already started")
            return []
        return self._dispatch(self.trade.chase_info.initial_price, now)

    def on_submission_confirmed(
        self,
        client_order_id: str,
        broker_order_id: str,
        now: datetime | None = None,
    ) -> list[Command]:
        """Broker acknowledged a submission."""
        now = _now(now)
        try:
            self._ledger.confirm_submission(client_order_id, broker_order_id)
        except NotFoundError as e:
            self._surface(e)
            return []

        if self.trade.state == TradeState.CANCELLED:
            self._surface(
                f"Late confirmation of {client_order_id} on cancelled trade, "
                f"cancelling broker order {broker_order_id}"
            )
            return [CancelOrder(self.trade.trade_id, broker_order_id, "late confirmation")]

        if self.trade.state in (TradeState.FILLED, TradeState.CLOSED):
            if self._is_filled_order(client_order_id, broker_order_id):
                return []
            self._surface(
                f"Order {client_order_id} confirmed as {broker_order_id} after the trade "
                f"filled via {self._filled_broker_order_id}, cancelling it"
            )
            return [CancelOrder(self.trade.trade_id, broker_order_id, "confirmed after fill")]

        if client_order_id != self.active_order_id:
            # Order already superseded by a newer re-quote
            self._superseded_broker_ids.add(broker_order_id)
            logger.debug(f"[TRADE] {self.trade.trade_id} stale confirmation {client_order_id}")
            return []

        self._consecutive_failures = 0
        self._live_broker_order_id = broker_order_id

        if self.trade.state == TradeState.PENDING:
            self._working_since = now
            self._transition(TradeState.WORKING, now, reason=f"order {broker_order_id} working")

        if self._cancel_requested and self.trade.state in ACTIVE_STATES:
            return [
                CancelOrder(
                    self.trade.trade_id,
                    broker_order_id,
                    self._cancel_reason or "cancel requested",
                )
            ]
        return []

    def on_submission_failed(
        self,
        client_order_id: str,
        error: str,
        now: datetime | None = None,
        attempt: int | None = None,
    ) -> list[Command]:
        """Broker rejected or timed out on a submission.

        ``attempt`` is the retry count the failed dispatch carried; a failure
        for an attempt that was already retried past or already failed is
        ignored, so a broker timeout and a wall-clock timeout for the same
        dispatch count once.
        """
        now = _now(now)
        record = self._ledger.get_order(client_order_id)
        if record is not None and attempt is not None and (
            attempt < record.retry_count or record.status == OrderStatus.FAILED
        ):
            logger.info(
                f"[TRADE] {self.trade.trade_id} ignoring failure of {client_order_id} "
                f"attempt {attempt}, already handled (retry {record.retry_count}, "
                f"{record.status.value})"
            )
            return []
        self._ledger.mark_failed(client_order_id, error)

        if self.trade.is_terminal or self.trade.state == TradeState.FILLED:
            logger.debug(f"[TRADE] {self.trade.trade_id} ignoring failure of {client_order_id}")
            return []

        spec = self._active_spec
        if spec is None or client_order_id != spec.client_order_id:
            logger.warning(
                f"[TRADE] {self.trade.trade_id} failure for superseded order {client_order_id}: {error}"
            )
            return []

        if record is not None and record.broker_order_id == self._live_broker_order_id:
            self._live_broker_order_id = None
        if spec.replaces_broker_order_id:
            # Rejected amend leaves the replaced order resting
            self._superseded_broker_ids.discard(spec.replaces_broker_order_id)

        self._consecutive_failures += 1
        self.trade.errors.append(error)
        logger.warning(
            f"[TRADE] {self.trade.trade_id} submission {client_order_id} failed "
            f"({self._consecutive_failures}/{self.config.max_submit_retries}): {error}"
        )

        if self._cancel_requested:
            return self._resolve_queued_cancel(now)

        if self._consecutive_failures >= self.config.max_submit_retries:
            message = (
                f"Submission failed {self._consecutive_failures} times, giving up: {error}"
            )
            self._surface(message)
            return self._begin_cancel("submission retries exhausted", now, error=message)

        try:
            return self._retry(spec, now)
        except NotFoundError as e:
            self._surface(e)
            return self._begin_cancel("order evicted from ledger", now, error=e.message)

    def _resolve_queued_cancel(self, now: datetime) -> list[Command]:
        if self._live_broker_order_id:
            return [
                CancelOrder(
                    self.trade.trade_id,
                    self._live_broker_order_id,
                    self._cancel_reason or "cancel requested",
                )
            ]
        self._transition(TradeState.CANCELLED, now, reason=self._cancel_reason)
        return []

    def on_tick(
        self,
        tick: MarketTick | MarketSnapshot,
        now: datetime | None = None,
    ) -> list[Command]:
        """Evaluate a market tick; may start or continue a chase."""
        now = _now(now)
        snapshot = MarketSnapshot.from_tick(tick) if isinstance(tick, MarketTick) else tick

        if self.trade.state not in ACTIVE_STATES:
            return []

        try:
            self._staleness.ensure_fresh(snapshot, now)
        except StaleDataError as e:
            logger.debug(f"[CHASE] {self.trade.trade_id} skipping tick: {e.message}")
            return []

        self._last_snapshot = snapshot

        if self.trade.state == TradeState.WORKING:
            reason = self._chase_trigger(snapshot, now)
            if reason is None:
                return []
            self._start_chase(now, reason)

        return self._chase_step(snapshot, now)

    def _chase_trigger(self, snapshot: MarketSnapshot, now: datetime) -> str | None:
        if self._working_since is not None:
            waited = (now - self._working_since).total_seconds()
            if waited >= self.config.grace_seconds:
                return f"unfilled after {waited:.1f}s"
        if self._last_price is not None:
            drift = abs(snapshot.mid - self._last_price)
            if drift > self.config.drift_tolerance:
                return f"market drifted {drift:.2f} from resting price"
        return None

    def _start_chase(self, now: datetime, reason: str) -> None:
        self._chase_started_at = now
        self._transition(TradeState.CHASING, now, reason=reason)

    def _chase_elapsed_ms(self, now: datetime) -> float:
        if self._chase_started_at is None:
            return 0.0
        return (now - self._chase_started_at).total_seconds() * 1000

    def _chase_step(self, snapshot: MarketSnapshot, now: datetime) -> list[Command]:
        if self._cancel_requested:
            return []

        info = self.trade.chase_info
        elapsed_ms = self._chase_elapsed_ms(now)

        if info.attempts >= self.config.max_chase_attempts:
            return self._begin_cancel(
                f"chase ceiling reached ({info.attempts} attempts)", now
            )
        if elapsed_ms >= self.config.max_chase_seconds * 1000:
            return self._begin_cancel(
                f"chase ceiling reached ({elapsed_ms / 1000:.1f}s)", now
            )

        context = ChaseContext(
            snapshot=snapshot,
            attempt_number=info.attempts + 1,
            elapsed_ms=elapsed_ms,
            underlying=self.trade.underlying,
            initial_limit_price=info.initial_price,
            greeks=self.trade.greeks,
        )
        computed = compute_price(self.strategy, context)
        price = validate_chase_price(computed, info.initial_price, self.config.max_slippage)
        info.attempts = context.attempt_number

        if price < computed:
            logger.debug(
                f"[CHASE] {self.trade.trade_id} clamped {computed:.4f} to ceiling {price:.4f}"
            )

        if self._submission_in_flight():
            logger.debug(
                f"[CHASE] {self.trade.trade_id} attempt {info.attempts} @ {price:.4f} "
                f"waiting on {self.active_order_id}"
            )
            return []

        if self._last_price is not None and abs(price - self._last_price) <= self.config.tick_tolerance:
            return []

        logger.info(
            f"[CHASE] {self.trade.trade_id} attempt {info.attempts} "
            f"{self.strategy.value} -> ${price:.4f}"
        )
        return self._dispatch(price, now)

    def check_timeouts(self, now: datetime | None = None) -> list[Command]:
        """Fire wall-clock timeouts even when market data is sparse.

        Covers the grace period, the chase ceiling and submissions the
        broker never answered. An unanswered submission counts as a failed
        one, so a queued cancel behind it still resolves.
        """
        now = _now(now)
        commands: list[Command] = []

        if self.trade.state == TradeState.CHASING and not self._cancel_requested:
            elapsed_ms = self._chase_elapsed_ms(now)
            if elapsed_ms >= self.config.max_chase_seconds * 1000:
                commands.extend(self._begin_cancel(
                    f"chase ceiling reached ({elapsed_ms / 1000:.1f}s)", now
                ))

        waited = self._submission_timed_out(now)
        spec = self._active_spec
        if waited is not None and spec is not None:
            commands.extend(self.on_submission_failed(
                spec.client_order_id,
                f"No broker response after {waited:.1f}s",
                now,
            ))

        if self.trade.state == TradeState.WORKING and self._working_since is not None:
            waited = (now - self._working_since).total_seconds()
            if waited < self.config.grace_seconds:
                return commands
            self._start_chase(now, f"unfilled after {waited:.1f}s")
            snapshot = self._last_snapshot
            if snapshot is not None and self._staleness.is_fresh(snapshot, now):
                commands.extend(self._chase_step(snapshot, now))

        return commands

    def request_cancel(self, reason: str = "user cancel", now: datetime | None = None) -> list[Command]:
        """Operator or system cancel. Only honoured while WORKING or CHASING."""
        now = _now(now)
        if self.trade.state not in ACTIVE_STATES:
            logger.warning(
                f"[TRADE] {self.trade.trade_id} cancel ignored in state {self.trade.state.value}"
            )
            return []
        return self._begin_cancel(reason, now)

    def on_cancel_ack(self, broker_order_id: str, now: datetime | None = None) -> list[Command]:
        """Broker confirmed an order was cancelled."""
        now = _now(now)
        if broker_order_id in self._superseded_broker_ids:
            logger.debug(f"[TRADE] {self.trade.trade_id} superseded order {broker_order_id} cancelled")
            return []

        if self.trade.state == TradeState.FILLED:
            logger.info(f"[TRADE] {self.trade.trade_id} cancel ack after fill, fill stands")
            return []

        if self.trade.state not in ACTIVE_STATES:
            return []

        if broker_order_id != self._live_broker_order_id:
            logger.warning(
                f"[TRADE] {self.trade.trade_id} cancel ack for unknown order {broker_order_id}"
            )
            return []

        self._live_broker_order_id = None
        reason = self._cancel_reason or "cancelled by broker"
        self._transition(TradeState.CANCELLED, now, reason=reason)
        return []

    def on_fill(
        self,
        fill_price: float,
        now: datetime | None = None,
        broker_order_id: str | None = None,
    ) -> list[Command]:
        """Entry order filled. A fill always beats a pending cancel."""
        now = _now(now)
        state = self.trade.state

        if state == TradeState.CANCELLED:
            self._surface(
                f"Fill @ {fill_price:.4f} received after cancellation "
                f"(broker order {broker_order_id}); position requires manual review"
            )
            return []

        if state in (TradeState.FILLED, TradeState.CLOSED):
            if broker_order_id is None or broker_order_id == self._filled_broker_order_id:
                logger.debug(f"[TRADE] {self.trade.trade_id} duplicate fill ignored")
                return []
            self._surface(
                f"Duplicate position: broker order {broker_order_id} filled @ {fill_price:.4f} "
                f"after the trade already filled via {self._filled_broker_order_id}; "
                f"manual review required"
            )
            return []

        if state not in (TradeState.PENDING, *ACTIVE_STATES):
            return []

        info = self.trade.chase_info
        info.final_price = fill_price
        start = self._chase_started_at or self._first_submitted_at or self.trade.created_at
        info.total_time_ms = (now - start).total_seconds() * 1000

        self.trade.entry_price = fill_price
        self.trade.filled_at = now
        self._filled_broker_order_id = broker_order_id or self._live_broker_order_id
        if state == TradeState.PENDING:
            # Only one order exists yet, so it is the one that filled
            self._filled_client_order_id = self.active_order_id
        self._live_broker_order_id = None

        if self._cancel_requested:
            logger.info(f"[TRADE] {self.trade.trade_id} filled while cancel pending, fill wins")

        self._transition(TradeState.FILLED, now, reason=f"filled @ {fill_price:.4f}")
        return []

    def close(
        self,
        exit_reason: ExitReason | str,
        exit_price: float,
        now: datetime | None = None,
    ) -> None:
        """Record the exit of a filled position.

        Raises:
            InvalidTransitionError: If the trade is not FILLED.
            ValueError: If the exit reason is unknown.
        """
        now = _now(now)
        reason = ExitReason(exit_reason)
        if self.trade.state != TradeState.FILLED:
            raise InvalidTransitionError(
                self.trade.trade_id, self.trade.state.value, TradeState.CLOSED.value
            )
        self.trade.exit_reason = reason
        self.trade.exit_price = exit_price
        self.trade.closed_at = now
        self._transition(TradeState.CLOSED, now, reason=f"exit {reason.value} @ {exit_price:.4f}")
