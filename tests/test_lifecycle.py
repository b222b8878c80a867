"""Unit tests for the trade lifecycle state machine.

Events are fed by hand with explicit timestamps; the commands the lifecycle
returns stand in for broker calls.
"""

from datetime import datetime, timedelta, timezone

import pytest

from scalpcore.chase.strategies import ChaseStrategy
from scalpcore.config import LifecycleConfig
from scalpcore.engine.lifecycle import (
    VALID_TRANSITIONS,
    CancelOrder,
    ChaseInfo,
    CloseRequested,
    ExitReason,
    SubmissionConfirmed,
    SubmissionFailed,
    SubmitOrder,
    Trade,
    TradeLifecycle,
    TradeState,
    is_terminal_state,
    is_valid_transition,
)
from scalpcore.engine.order_ledger import OrderLedger
from scalpcore.errors import InvalidTransitionError
from scalpcore.models.market_data import MarketTick
from scalpcore.models.orders import OrderStatus

T0 = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_config(**overrides) -> LifecycleConfig:
    values = dict(
        grace_seconds=2.0,
        max_chase_attempts=10,
        max_chase_seconds=30.0,
        max_submit_retries=3,
    )
    values.update(overrides)
    return LifecycleConfig(**values)


def make_lifecycle(
    strategy: ChaseStrategy = ChaseStrategy.AGGRESSIVE_LINEAR,
    initial_price: float = 5100.00,
    **config_overrides,
) -> TradeLifecycle:
    trade = Trade(
        trade_id="trade-1",
        underlying="SPX",
        chase_info=ChaseInfo(initial_price=initial_price, strategy_name=strategy.value),
        created_at=T0,
    )
    return TradeLifecycle(trade, OrderLedger(), make_config(**config_overrides), strategy)


def make_tick(seconds: float, bid: float = 5100.00, ask: float = 5100.10) -> MarketTick:
    return MarketTick(
        symbol="SPX",
        last=round((bid + ask) / 2, 2),
        bid=bid,
        ask=ask,
        timestamp=at(seconds),
    )


def start_working(lifecycle: TradeLifecycle, broker_order_id: str = "B-1") -> SubmitOrder:
    """Start the trade and confirm the initial order at T0."""
    (submit,) = lifecycle.start(now=T0)
    lifecycle.on_submission_confirmed(submit.spec.client_order_id, broker_order_id, now=T0)
    return submit


def start_chasing(lifecycle: TradeLifecycle) -> SubmitOrder:
    """Reach CHASING via the grace period and confirm the first re-quote."""
    start_working(lifecycle)
    commands = lifecycle.on_tick(make_tick(3), now=at(3))
    submit = [c for c in commands if isinstance(c, SubmitOrder)][0]
    lifecycle.on_submission_confirmed(submit.spec.client_order_id, "B-2", now=at(3))
    return submit


class TestTransitionTable:
    """Tests for the transition table."""

    def test_happy_path_edges(self):
        """Every forward edge of the happy path is allowed."""
        assert is_valid_transition(TradeState.PENDING, TradeState.WORKING)
        assert is_valid_transition(TradeState.WORKING, TradeState.CHASING)
        assert is_valid_transition(TradeState.CHASING, TradeState.FILLED)
        assert is_valid_transition(TradeState.FILLED, TradeState.CLOSED)

    def test_no_backwards_edges(self):
        """No state can move backwards."""
        assert not is_valid_transition(TradeState.CHASING, TradeState.WORKING)
        assert not is_valid_transition(TradeState.FILLED, TradeState.CANCELLED)
        assert not is_valid_transition(TradeState.CANCELLED, TradeState.FILLED)

    def test_terminal_states(self):
        """CANCELLED and CLOSED are terminal, FILLED is not."""
        assert is_terminal_state(TradeState.CANCELLED)
        assert is_terminal_state(TradeState.CLOSED)
        assert not is_terminal_state(TradeState.FILLED)
        assert set(VALID_TRANSITIONS) == set(TradeState)


class TestStart:
    """Tests for the initial submission."""

    def test_start_emits_submit_and_records_ledger(self):
        """Start records the order in the ledger before emitting the submit."""
        lifecycle = make_lifecycle()

        commands = lifecycle.start(now=T0)

        assert len(commands) == 1
        submit = commands[0]
        assert isinstance(submit, SubmitOrder)
        assert submit.spec.limit_price == 5100.00
        assert submit.spec.replaces_broker_order_id is None
        record = lifecycle._ledger.get_order(submit.spec.client_order_id)
        assert record.status == OrderStatus.SUBMITTED
        assert record.trade_id == "trade-1"
        assert lifecycle.state == TradeState.PENDING

    def test_start_twice_is_ignored(self):
        """A second start emits nothing."""
        lifecycle = make_lifecycle()
        lifecycle.start(now=T0)

        assert lifecycle.start(now=T0) == []

    def test_confirmation_moves_to_working(self):
        """Broker confirmation moves PENDING to WORKING."""
        lifecycle = make_lifecycle()

        start_working(lifecycle)

        assert lifecycle.state == TradeState.WORKING
        assert lifecycle.live_broker_order_id == "B-1"
        transition = lifecycle.trade.state_history[-1]
        assert transition.from_state == TradeState.PENDING
        assert transition.to_state == TradeState.WORKING

    def test_unknown_confirmation_is_surfaced_not_raised(self):
        """An unknown client id is recorded on the trade, not raised."""
        lifecycle = make_lifecycle()
        lifecycle.start(now=T0)

        commands = lifecycle.handle(SubmissionConfirmed("client-nope", "B-9"), now=T0)

        assert commands == []
        assert lifecycle.state == TradeState.PENDING
        assert "client-nope" in lifecycle.trade.errors[-1]


class TestSubmissionFailures:
    """Tests for the retry cap."""

    def test_three_failures_in_working_cancel_on_third(self):
        """Retry cap 3: CANCELLED on the third failure, not the fourth."""
        lifecycle = make_lifecycle(max_submit_retries=3)
        submit = start_working(lifecycle)
        cid = submit.spec.client_order_id

        first = lifecycle.on_submission_failed(cid, "rejected 1", now=at(1))
        assert lifecycle.state == TradeState.WORKING
        assert isinstance(first[0], SubmitOrder)
        assert first[0].is_retry is True
        assert first[0].spec.client_order_id == cid

        second = lifecycle.on_submission_failed(cid, "rejected 2", now=at(1))
        assert lifecycle.state == TradeState.WORKING
        assert second[0].spec.client_order_id == cid

        third = lifecycle.on_submission_failed(cid, "rejected 3", now=at(1))

        assert third == []
        assert lifecycle.state == TradeState.CANCELLED
        assert lifecycle._ledger.get_order(cid).retry_count == 2
        assert lifecycle.trade.state_history[-1].error is not None

    def test_retries_exhausted_before_confirmation(self):
        """Exhausting retries before any confirmation cancels from PENDING."""
        lifecycle = make_lifecycle(max_submit_retries=2)
        (submit,) = lifecycle.start(now=T0)
        cid = submit.spec.client_order_id

        lifecycle.on_submission_failed(cid, "timeout", now=T0)
        lifecycle.on_submission_failed(cid, "timeout", now=T0)

        assert lifecycle.state == TradeState.CANCELLED
        assert lifecycle.trade.state_history[-1].from_state == TradeState.PENDING

    def test_success_resets_failure_count(self):
        """A confirmation resets the consecutive failure count."""
        lifecycle = make_lifecycle(max_submit_retries=2)
        (submit,) = lifecycle.start(now=T0)
        cid = submit.spec.client_order_id

        lifecycle.on_submission_failed(cid, "timeout", now=T0)
        lifecycle.on_submission_confirmed(cid, "B-1", now=T0)

        assert lifecycle.consecutive_failures == 0
        assert lifecycle.state == TradeState.WORKING


class TestChasing:
    """Tests for tick-driven re-quotes."""

    def test_no_chase_inside_grace_period(self):
        """Ticks inside the grace period do not start a chase."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        commands = lifecycle.on_tick(make_tick(1), now=at(1))

        assert commands == []
        assert lifecycle.state == TradeState.WORKING
        assert lifecycle.trade.chase_info.attempts == 0

    def test_grace_period_starts_chase(self):
        """First tick after the grace period starts chasing and re-quotes."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        commands = lifecycle.on_tick(make_tick(3), now=at(3))

        assert lifecycle.state == TradeState.CHASING
        assert lifecycle.trade.chase_info.attempts == 1
        (submit,) = commands
        assert submit.spec.limit_price == pytest.approx(5100.05)
        assert submit.spec.replaces_broker_order_id == "B-1"

    def test_drift_starts_chase_early_and_clamps(self):
        """Market running away triggers chase; price capped at initial + 0.50."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        commands = lifecycle.on_tick(make_tick(0.5, bid=5100.50, ask=5100.70), now=at(0.5))

        assert lifecycle.state == TradeState.CHASING
        (submit,) = commands
        assert submit.spec.limit_price == pytest.approx(5100.50)

    def test_each_requote_gets_new_client_id(self):
        """Every re-quote is a new logical order with its own id."""
        lifecycle = make_lifecycle()
        initial = start_working(lifecycle)

        requote = lifecycle.on_tick(make_tick(3), now=at(3))[0]

        assert requote.spec.client_order_id != initial.spec.client_order_id
        assert len(lifecycle._ledger.get_orders_by_trade("trade-1")) == 2

    def test_in_flight_submission_blocks_dispatch_but_counts_attempt(self):
        """An unanswered submission suppresses re-quotes but attempts still count."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        lifecycle.on_tick(make_tick(3), now=at(3))

        commands = lifecycle.on_tick(make_tick(4), now=at(4))

        assert commands == []
        assert lifecycle.trade.chase_info.attempts == 2

    def test_unchanged_price_is_not_resubmitted(self):
        """Mid-capped strategy settles at mid; repeat ticks send nothing."""
        lifecycle = make_lifecycle(strategy=ChaseStrategy.CONSERVATIVE_BOUNDED)
        start_chasing(lifecycle)
        assert lifecycle.last_price == pytest.approx(5100.05)

        commands = lifecycle.on_tick(make_tick(4), now=at(4))

        assert commands == []
        assert lifecycle.trade.chase_info.attempts == 2

    def test_stale_tick_is_skipped(self):
        """Stale ticks neither chase nor fail the trade."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        commands = lifecycle.on_tick(make_tick(-10, bid=5101.00, ask=5101.20), now=at(3))

        assert commands == []
        assert lifecycle.state == TradeState.WORKING

    def test_cancel_replace_mode(self):
        """Without amend support the old order is cancelled and a fresh one sent."""
        lifecycle = make_lifecycle(amend_in_place=False)
        start_working(lifecycle)

        commands = lifecycle.on_tick(make_tick(3), now=at(3))

        cancel, submit = commands
        assert isinstance(cancel, CancelOrder)
        assert cancel.broker_order_id == "B-1"
        assert submit.spec.replaces_broker_order_id is None

        # Ack for the superseded order does not cancel the trade
        lifecycle.on_cancel_ack("B-1", now=at(3))
        assert lifecycle.state == TradeState.CHASING

    def test_attempt_ceiling_cancels(self):
        """Reaching the attempt ceiling cancels the live order."""
        lifecycle = make_lifecycle(max_chase_attempts=2)
        start_chasing(lifecycle)
        submit = lifecycle.on_tick(make_tick(4), now=at(4))[0]
        lifecycle.on_submission_confirmed(submit.spec.client_order_id, "B-3", now=at(4))

        commands = lifecycle.on_tick(make_tick(5), now=at(5))

        (cancel,) = commands
        assert isinstance(cancel, CancelOrder)
        assert cancel.broker_order_id == "B-3"
        assert lifecycle.state == TradeState.CHASING

        lifecycle.on_cancel_ack("B-3", now=at(5))

        assert lifecycle.state == TradeState.CANCELLED
        assert "ceiling" in lifecycle.trade.state_history[-1].reason


class TestTimeouts:
    """Tests for wall-clock timeouts."""

    def test_grace_timeout_without_ticks(self):
        """The grace period expires on the timer alone."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        commands = lifecycle.check_timeouts(now=at(3))

        assert commands == []
        assert lifecycle.state == TradeState.CHASING

    def test_grace_timeout_uses_last_fresh_tick(self):
        """A timer-driven chase prices off the last fresh tick."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        lifecycle.on_tick(make_tick(1), now=at(1))

        commands = lifecycle.check_timeouts(now=at(3))

        assert lifecycle.state == TradeState.CHASING
        (submit,) = commands
        assert submit.spec.limit_price == pytest.approx(5100.05)

    def test_chase_time_ceiling(self):
        """The chase time ceiling cancels the live order."""
        lifecycle = make_lifecycle(max_chase_seconds=10)
        start_chasing(lifecycle)

        assert lifecycle.check_timeouts(now=at(12)) == []

        (cancel,) = lifecycle.check_timeouts(now=at(13))
        assert cancel.broker_order_id == "B-2"

    def test_unanswered_requote_cancels_at_ceiling(self):
        """A re-quote the broker never answers cannot hold the trade past the chase ceiling."""
        lifecycle = make_lifecycle(amend_in_place=False)
        start_working(lifecycle)
        lifecycle.on_tick(make_tick(3), now=at(3))

        assert lifecycle.check_timeouts(now=at(40)) == []

        assert lifecycle.state == TradeState.CANCELLED
        assert "ceiling" in lifecycle.trade.state_history[-1].reason
        assert "No broker response" in lifecycle.trade.errors[-1]

    def test_unanswered_amend_cancels_resting_order(self):
        """A lost amend at the ceiling cancels the order it meant to replace."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        lifecycle.on_tick(make_tick(3), now=at(3))

        (cancel,) = lifecycle.check_timeouts(now=at(40))
        assert cancel.broker_order_id == "B-1"
        assert lifecycle.state == TradeState.CHASING

        lifecycle.on_cancel_ack("B-1", now=at(41))
        assert lifecycle.state == TradeState.CANCELLED

    def test_late_confirmation_after_timeout_cancel(self):
        """The unanswered order is cancelled if the broker confirms it after all."""
        lifecycle = make_lifecycle(amend_in_place=False)
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[-1]
        lifecycle.check_timeouts(now=at(40))

        (cancel,) = lifecycle.on_submission_confirmed(
            submit.spec.client_order_id, "B-2", now=at(45)
        )

        assert cancel.broker_order_id == "B-2"
        assert lifecycle.state == TradeState.CANCELLED

    def test_unanswered_submission_is_retried(self):
        """An unanswered submission is retried under the same client id."""
        lifecycle = make_lifecycle(submit_timeout_seconds=5)
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[0]

        assert lifecycle.check_timeouts(now=at(7)) == []
        (retry,) = lifecycle.check_timeouts(now=at(8))

        assert retry.is_retry is True
        assert retry.attempt == 1
        assert retry.spec.client_order_id == submit.spec.client_order_id
        assert lifecycle.state == TradeState.CHASING

    def test_stale_attempt_failure_is_ignored(self):
        """A failure reported for an attempt already retried does not count twice."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[0]
        lifecycle.check_timeouts(now=at(9))

        commands = lifecycle.handle(
            SubmissionFailed(submit.spec.client_order_id, "Broker submit timed out", attempt=0),
            now=at(9),
        )

        assert commands == []
        assert lifecycle.consecutive_failures == 1
        record = lifecycle._ledger.get_order(submit.spec.client_order_id)
        assert record.status == OrderStatus.SUBMITTED
        assert record.retry_count == 1

    def test_broker_timeout_after_wall_clock_timeout_counts_once(self):
        """Both timeouts firing for one dispatch count as a single failure."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[0]
        (cancel,) = lifecycle.check_timeouts(now=at(40))

        commands = lifecycle.handle(
            SubmissionFailed(submit.spec.client_order_id, "Broker submit timed out", attempt=0),
            now=at(40),
        )

        assert commands == []
        assert lifecycle.consecutive_failures == 1
        assert cancel.broker_order_id == "B-1"


class TestCancel:
    """Tests for operator cancels."""

    def test_cancel_ignored_while_pending(self):
        """Cancel requests are ignored before the order is working."""
        lifecycle = make_lifecycle()
        lifecycle.start(now=T0)

        assert lifecycle.request_cancel(now=T0) == []
        assert lifecycle.cancel_requested is False

    def test_cancel_working_order(self):
        """Cancel of a working order completes on the broker ack."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        (cancel,) = lifecycle.request_cancel("operator", now=at(1))
        lifecycle.on_cancel_ack(cancel.broker_order_id, now=at(1))

        assert lifecycle.state == TradeState.CANCELLED
        assert lifecycle.trade.state_history[-1].reason == "operator"

    def test_cancel_queued_behind_in_flight_submission(self):
        """Cancel waits for the in-flight submission, then cancels its order."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[0]

        assert lifecycle.request_cancel(now=at(3)) == []

        (cancel,) = lifecycle.on_submission_confirmed(
            submit.spec.client_order_id, "B-2", now=at(3)
        )
        assert cancel.broker_order_id == "B-2"

        lifecycle.on_cancel_ack("B-2", now=at(3))
        assert lifecycle.state == TradeState.CANCELLED

    def test_fill_beats_cancel(self):
        """A fill that races a cancel wins."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        (cancel,) = lifecycle.request_cancel(now=at(1))

        lifecycle.on_fill(5100.00, now=at(1))
        lifecycle.on_cancel_ack(cancel.broker_order_id, now=at(1))

        assert lifecycle.state == TradeState.FILLED
        assert lifecycle.trade.entry_price == 5100.00


class TestFillAndClose:
    """Tests for fills and exits."""

    def test_fill_stamps_chase_info(self):
        """Fill records the final price and chase duration."""
        lifecycle = make_lifecycle()
        start_chasing(lifecycle)

        lifecycle.on_fill(5100.05, now=at(5))

        info = lifecycle.trade.chase_info
        assert lifecycle.state == TradeState.FILLED
        assert info.final_price == 5100.05
        assert info.total_time_ms == pytest.approx(2000)
        assert lifecycle.trade.filled_at == at(5)

    def test_fill_before_confirmation(self):
        """A fill that overtakes its confirmation still fills the trade."""
        lifecycle = make_lifecycle()
        lifecycle.start(now=T0)

        lifecycle.on_fill(5100.00, now=at(0.2))

        assert lifecycle.state == TradeState.FILLED

    def test_filled_trade_ignores_ticks(self):
        """Ticks after the fill do nothing."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        lifecycle.on_fill(5100.00, now=at(1))

        assert lifecycle.on_tick(make_tick(5), now=at(5)) == []
        assert lifecycle.trade.chase_info.attempts == 0

    def test_close_records_exit(self):
        """Close records exit reason and price."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        lifecycle.on_fill(5100.00, now=at(1))

        lifecycle.close(ExitReason.TP, 5101.50, now=at(120))

        assert lifecycle.state == TradeState.CLOSED
        assert lifecycle.trade.exit_reason == ExitReason.TP
        assert lifecycle.trade.exit_price == 5101.50

    def test_close_requires_fill(self):
        """Only filled trades can be closed."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        with pytest.raises(InvalidTransitionError):
            lifecycle.close("SL", 5099.00, now=at(1))

    def test_close_via_handle_never_raises(self):
        """An invalid close through handle is recorded, not raised."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)

        lifecycle.handle(CloseRequested(ExitReason.MANUAL, 5099.00), now=at(1))

        assert lifecycle.state == TradeState.WORKING
        assert "Invalid transition" in lifecycle.trade.errors[-1]

    def test_requote_confirmed_after_fill_is_cancelled(self):
        """A re-quote confirmed after the old order filled is cancelled at once."""
        lifecycle = make_lifecycle(amend_in_place=False)
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[-1]
        lifecycle.on_fill(5100.00, now=at(3.5), broker_order_id="B-1")

        (cancel,) = lifecycle.on_submission_confirmed(
            submit.spec.client_order_id, "B-2", now=at(4)
        )

        assert isinstance(cancel, CancelOrder)
        assert cancel.broker_order_id == "B-2"
        assert lifecycle.state == TradeState.FILLED
        assert lifecycle.filled_broker_order_id == "B-1"
        assert "after the trade filled" in lifecycle.trade.errors[-1]

    def test_second_fill_is_flagged_as_duplicate_position(self):
        """A fill from a second broker order is surfaced for manual review."""
        lifecycle = make_lifecycle(amend_in_place=False)
        start_working(lifecycle)
        submit = lifecycle.on_tick(make_tick(3), now=at(3))[-1]
        lifecycle.on_fill(5100.00, now=at(3.5), broker_order_id="B-1")
        lifecycle.on_submission_confirmed(submit.spec.client_order_id, "B-2", now=at(4))

        assert lifecycle.on_fill(5100.05, now=at(4.5), broker_order_id="B-2") == []

        assert lifecycle.state == TradeState.FILLED
        assert lifecycle.trade.entry_price == 5100.00
        assert "Duplicate position" in lifecycle.trade.errors[-1]
        assert "manual review" in lifecycle.trade.errors[-1]

    def test_repeated_fill_of_same_order_is_ignored(self):
        """The same order reported filled twice is not a duplicate position."""
        lifecycle = make_lifecycle()
        start_working(lifecycle)
        lifecycle.on_fill(5100.00, now=at(1), broker_order_id="B-1")

        lifecycle.on_fill(5100.00, now=at(2), broker_order_id="B-1")

        assert lifecycle.trade.errors == []

    def test_confirmation_of_filled_order_is_not_cancelled(self):
        """A confirmation that arrives after its own order filled needs no cancel."""
        lifecycle = make_lifecycle()
        (submit,) = lifecycle.start(now=T0)
        lifecycle.on_fill(5100.00, now=at(0.2))

        commands = lifecycle.on_submission_confirmed(
            submit.spec.client_order_id, "B-1", now=at(0.3)
        )

        assert commands == []
        assert lifecycle.trade.errors == []


class TestListeners:
    """Tests for transition listeners."""

    def test_listener_receives_transitions(self):
        """Listeners see transitions until they unsubscribe."""
        lifecycle = make_lifecycle()
        seen = []
        unsubscribe = lifecycle.add_listener(seen.append)

        start_working(lifecycle)
        unsubscribe()
        lifecycle.on_fill(5100.00, now=at(1))

        assert [t.to_state for t in seen] == [TradeState.WORKING]
        assert len(lifecycle.trade.state_history) == 2

    def test_listener_errors_do_not_break_transition(self):
        """A failing listener does not stop the transition."""
        lifecycle = make_lifecycle()

        def broken(transition):
            raise RuntimeError("boom")

        lifecycle.add_listener(broken)
        start_working(lifecycle)

        assert lifecycle.state == TradeState.WORKING
