"""Actor-per-trade orchestration.

Each live trade owns an ``asyncio.Queue`` and a worker task that hands
events to its ``TradeLifecycle`` one at a time. Commands the lifecycle
emits are executed against the broker inside that worker, and the broker's
answers are queued back as events for the same trade. Trades never share a
queue; the only shared state is the order ledger, which serializes per
client order id.

Every broker call is bounded by the submit timeout, so a broker that never
answers turns into a failed submission instead of a stuck trade. Bracket
exit legs placed on a filled trade close it as TP or SL when they fill.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal
from uuid import uuid4

from scalpcore.chase.strategies import ChaseStrategy
from scalpcore.config import LifecycleConfig
from scalpcore.data.broker import Broker, OrderSpec, SubmitResult
from scalpcore.data.staleness import StalenessChecker
from scalpcore.engine.lifecycle import (
    CancelAcknowledged,
    CancelOrder,
    CancelRequested,
    ChaseInfo,
    CloseRequested,
    Command,
    ExitReason,
    FillReceived,
    StartTrade,
    StateTransition,
    SubmissionConfirmed,
    SubmissionFailed,
    SubmitOrder,
    TickReceived,
    TimeoutCheck,
    Trade,
    TradeLifecycle,
    TradeState,
)
from scalpcore.engine.order_ledger import OrderLedger
from scalpcore.engine.trade_history import TradeHistoryStore
from scalpcore.errors import InvalidTransitionError, SubmissionFailure, get_error_message
from scalpcore.models.market_data import Greeks, MarketSnapshot, MarketTick
from scalpcore.models.orders import BracketGroup, OrderRecord, OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class _TradeActor:
    lifecycle: TradeLifecycle
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None

    @property
    def trade(self) -> Trade:
        return self.lifecycle.trade


class TradeManager:
    """Runs every open trade as its own sequential actor.

    Usage:
        manager = TradeManager(broker, ledger, lifecycle_config, ChaseStrategy.TIME_WEIGHTED)
        await manager.start()

        trade = await manager.open_trade("SPX", limit_price=5100.00)
        await manager.on_tick(tick)          # routed to every live SPX trade
        await manager.request_cancel(trade.trade_id)        # while unfilled, or
        await manager.attach_brackets(trade.trade_id, tp_pct=20, sl_pct=10)  # once FILLED

        await manager.stop()
    """

    def __init__(
        self,
        broker: Broker,
        ledger: OrderLedger,
        config: LifecycleConfig,
        strategy: ChaseStrategy,
        history: TradeHistoryStore | None = None,
        staleness: StalenessChecker | None = None,
        timeout_check_interval: float = 0.5,
        on_transition: Callable[[StateTransition], None] | None = None,
    ):
        """Initialize the trade manager.

        Args:
            broker: Broker used to submit and cancel orders
            ledger: Shared idempotent order ledger
            config: Lifecycle safety parameters applied to every trade
            strategy: Default chase strategy for new trades
            history: Archive for terminal trades (memory-only if omitted)
            staleness: Freshness checker for market ticks
            timeout_check_interval: Seconds between wall-clock timeout sweeps
            on_transition: Called for every state transition of every trade
        """
        self.broker = broker
        self.ledger = ledger
        self.config = config
        self.strategy = strategy
        self.history = history or TradeHistoryStore()
        self.staleness = staleness or StalenessChecker()
        self.timeout_check_interval = timeout_check_interval
        self.on_transition = on_transition

        self._actors: dict[str, _TradeActor] = {}
        self._broker_orders: dict[str, str] = {}  # broker_order_id -> trade_id

        self._running = False
        self._timer_task: asyncio.Task | None = None

        self.broker.on_fill = self._on_broker_fill

    # ------------------------------------------------------------------
    # Lifecycle of the manager itself
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the timeout sweep and the ledger cleanup task."""
        if self._running:
            return

        self._running = True
        await self.ledger.start()
        self._timer_task = asyncio.create_task(self._timeout_loop())
        logger.info(
            f"[MANAGER] Started (strategy: {self.strategy.value}, "
            f"timeout sweep: {self.timeout_check_interval}s)"
        )

    async def stop(self) -> None:
        """Stop background tasks and every trade worker."""
        self._running = False

        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        for actor in list(self._actors.values()):
            await self._stop_actor(actor)

        await self.ledger.stop()
        logger.info("[MANAGER] Stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _stop_actor(self, actor: _TradeActor) -> None:
        if actor.task and not actor.task.done():
            actor.task.cancel()
            try:
                await actor.task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Trade entry points
    # ------------------------------------------------------------------

    async def open_trade(
        self,
        underlying: str,
        limit_price: float,
        side: Literal["buy", "sell"] = "buy",
        quantity: int = 1,
        symbol: str | None = None,
        strategy: ChaseStrategy | None = None,
        greeks: Greeks | None = None,
    ) -> Trade:
        """Create a trade and submit its initial limit order.

        Raises:
            ValueError: If quantity or price is invalid.
        """
        strategy = strategy or self.strategy
        underlying = underlying.upper()

        trade = Trade(
            trade_id=f"trade-{uuid4().hex[:12]}",
            underlying=underlying,
            symbol=(symbol or underlying).upper(),
            side=side,
            quantity=quantity,
            greeks=greeks,
            chase_info=ChaseInfo(initial_price=limit_price, strategy_name=strategy.value),
        )
        lifecycle = TradeLifecycle(trade, self.ledger, self.config, strategy, self.staleness)
        if self.on_transition:
            lifecycle.add_listener(self.on_transition)

        actor = _TradeActor(lifecycle=lifecycle)
        self._actors[trade.trade_id] = actor
        actor.task = asyncio.create_task(self._run_actor(actor))
        actor.queue.put_nowait(StartTrade())

        logger.info(
            f"[MANAGER] Opened {trade.trade_id}: {side.upper()} {quantity}x {trade.symbol} "
            f"@ ${limit_price:.2f} ({strategy.value})"
        )
        return trade

    async def on_tick(self, tick: MarketTick | MarketSnapshot) -> int:
        """Route a tick to every unfilled trade on its symbol.

        Returns:
            Number of trades the tick was delivered to.
        """
        delivered = 0
        for actor in list(self._actors.values()):
            trade = actor.trade
            if trade.underlying != tick.symbol:
                continue
            if trade.state not in (TradeState.WORKING, TradeState.CHASING):
                continue
            actor.queue.put_nowait(TickReceived(tick))
            delivered += 1
        return delivered

    async def request_cancel(self, trade_id: str, reason: str = "user cancel") -> bool:
        """Queue a cancel for a live trade.

        Returns:
            False if the trade is unknown or already finished.
        """
        actor = self._actors.get(trade_id)
        if actor is None:
            return False
        actor.queue.put_nowait(CancelRequested(reason))
        return True

    async def close_trade(
        self,
        trade_id: str,
        exit_reason: ExitReason | str,
        exit_price: float,
    ) -> Trade:
        """Close a filled trade and archive it.

        Raises:
            KeyError: If the trade is not live.
            InvalidTransitionError: If the trade is not FILLED.
            ValueError: If the exit reason is unknown.
        """
        actor = self._actors.get(trade_id)
        if actor is None:
            raise KeyError(trade_id)
        reason = ExitReason(exit_reason)
        if actor.trade.state != TradeState.FILLED:
            raise InvalidTransitionError(
                trade_id, actor.trade.state.value, TradeState.CLOSED.value
            )

        actor.queue.put_nowait(CloseRequested(reason, exit_price))
        await actor.queue.join()
        return actor.trade

    async def attach_brackets(self, trade_id: str, tp_pct: float, sl_pct: float) -> BracketGroup:
        """Place take-profit and stop-loss exit orders on a filled trade.

        The take-profit leg is a limit order and the stop-loss leg a stop
        order, both on the exit side. Whichever fills first closes the trade
        with exit reason TP or SL; the other is cancelled when the trade
        closes.

        Raises:
            KeyError: If the trade is not live.
            InvalidTransitionError: If the trade is not FILLED.
            ValueError: If a percentage is not positive or brackets already exist.
        """
        actor = self._actors.get(trade_id)
        if actor is None:
            raise KeyError(trade_id)
        trade = actor.trade
        if trade.state != TradeState.FILLED or trade.entry_price is None:
            raise InvalidTransitionError(trade_id, trade.state.value, TradeState.CLOSED.value)

        trigger_order_id = actor.lifecycle.filled_broker_order_id or trade_id
        if self.ledger.get_group(trigger_order_id) is not None:
            raise ValueError(f"Trade {trade_id} already has bracket orders")

        group = BracketGroup(
            trigger_order_id=trigger_order_id,
            trade_id=trade_id,
            side=trade.side,
            entry_price=trade.entry_price,
            tp_pct=tp_pct,
            sl_pct=sl_pct,
        )
        self.ledger.store_group(group)

        legs = (
            ("TP", "limit", group.take_profit_price),
            ("SL", "stop", group.stop_loss_price),
        )
        for leg, order_type, price in legs:
            if trade.state != TradeState.FILLED:
                break
            result = await self._submit_bracket_leg(trade, group, leg, order_type, price)
            if result is not None and result.status == "filled" and result.fill_price is not None:
                await self._on_broker_fill(result.broker_order_id, result.fill_price)
                break

        return group

    async def wait_idle(self, trade_id: str | None = None) -> None:
        """Wait until queued events (for one trade or all) have been handled."""
        actors = (
            [self._actors[trade_id]] if trade_id in self._actors
            else [] if trade_id is not None
            else list(self._actors.values())
        )
        for actor in actors:
            await actor.queue.join()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run_actor(self, actor: _TradeActor) -> None:
        trade_id = actor.trade.trade_id
        while True:
            event = await actor.queue.get()
            try:
                try:
                    commands = actor.lifecycle.handle(event)
                    for command in commands:
                        await self._execute(actor, command)
                except Exception as e:
                    logger.error(f"[MANAGER] {trade_id} worker error: {e}")

                # Finish before task_done so wait_idle sees the archived trade
                if actor.trade.is_terminal:
                    await self._cancel_bracket_legs(actor.trade)
                    self._archive(actor)
            finally:
                actor.queue.task_done()

            if actor.trade.is_terminal:
                self._drain(actor)
                break

    def _drain(self, actor: _TradeActor) -> None:
        while not actor.queue.empty():
            event = actor.queue.get_nowait()
            logger.warning(f"[MANAGER] {actor.trade.trade_id} dropped {event!r} after archive")
            actor.queue.task_done()

    async def _execute(self, actor: _TradeActor, command: Command) -> None:
        if isinstance(command, SubmitOrder):
            await self._submit(actor, command)
        elif isinstance(command, CancelOrder):
            await self._cancel(actor, command)

    async def _submit(self, actor: _TradeActor, command: SubmitOrder) -> None:
        spec = command.spec
        timeout = self.config.submit_timeout_seconds
        try:
            result = await asyncio.wait_for(self.broker.submit(spec), timeout=timeout)
        except SubmissionFailure as e:
            actor.queue.put_nowait(
                SubmissionFailed(spec.client_order_id, e.message, command.attempt)
            )
            return
        except asyncio.TimeoutError:
            # Outcome unknown; the retry reuses the same client order id
            message = f"Broker submit timed out after {timeout}s"
            logger.error(f"[BROKER] Submit {spec.client_order_id}: {message}")
            actor.queue.put_nowait(
                SubmissionFailed(spec.client_order_id, message, command.attempt)
            )
            return
        except Exception as e:
            logger.error(f"[BROKER] Submit {spec.client_order_id} errored: {e}")
            actor.queue.put_nowait(
                SubmissionFailed(spec.client_order_id, f"Broker error: {e}", command.attempt)
            )
            return

        self._broker_orders[result.broker_order_id] = actor.trade.trade_id
        actor.queue.put_nowait(
            SubmissionConfirmed(spec.client_order_id, result.broker_order_id)
        )
        if result.status == "filled" and result.fill_price is not None:
            actor.queue.put_nowait(FillReceived(result.fill_price, result.broker_order_id))

    async def _cancel(self, actor: _TradeActor, command: CancelOrder) -> None:
        try:
            cancelled = await asyncio.wait_for(
                self.broker.cancel(command.broker_order_id),
                timeout=self.config.submit_timeout_seconds,
            )
        except asyncio.TimeoutError:
            message = (
                f"Cancel of {command.broker_order_id} timed out after "
                f"{self.config.submit_timeout_seconds}s"
            )
            logger.error(f"[BROKER] {message}")
            actor.trade.errors.append(message)
            return
        except Exception as e:
            message = f"Cancel of {command.broker_order_id} failed: {e}"
            logger.error(f"[BROKER] {message}")
            actor.trade.errors.append(message)
            return

        if cancelled:
            actor.queue.put_nowait(CancelAcknowledged(command.broker_order_id))
        else:
            logger.info(
                f"[BROKER] {command.broker_order_id} not cancellable (filled), awaiting fill"
            )

    async def _on_broker_fill(self, broker_order_id: str, fill_price: float) -> None:
        trade_id = self._broker_orders.get(broker_order_id)
        actor = self._actors.get(trade_id) if trade_id else None
        if actor is None:
            logger.error(
                f"[MANAGER] Fill for untracked broker order {broker_order_id} @ {fill_price:.4f}"
            )
            return

        group = self.ledger.get_group_by_order_id(broker_order_id)
        if group is not None:
            leg = group.leg_for(broker_order_id)
            self.ledger.update_group(group.trigger_order_id, filled_leg=leg)
            logger.info(
                f"[BRACKET] {group.trade_id} {leg} leg {broker_order_id} filled @ {fill_price:.4f}"
            )
            actor.queue.put_nowait(CloseRequested(ExitReason(leg), fill_price))
            return

        actor.queue.put_nowait(FillReceived(fill_price, broker_order_id))

    def _archive(self, actor: _TradeActor) -> None:
        trade = actor.trade
        try:
            self.history.save(trade)
        except Exception as e:
            logger.error(f"[MANAGER] Failed to archive {trade.trade_id}: {e}")

        self._actors.pop(trade.trade_id, None)
        for broker_order_id in [
            b for b, t in self._broker_orders.items() if t == trade.trade_id
        ]:
            del self._broker_orders[broker_order_id]

        logger.info(f"[MANAGER] Archived {trade.trade_id} ({trade.state.value})")

    # ------------------------------------------------------------------
    # Bracket exits
    # ------------------------------------------------------------------

    async def _submit_bracket_leg(
        self,
        trade: Trade,
        group: BracketGroup,
        leg: str,
        order_type: Literal["limit", "stop"],
        price: float,
    ) -> SubmitResult | None:
        client_order_id = self.ledger.new_client_order_id()
        record = OrderRecord(
            client_order_id=client_order_id,
            trade_id=trade.trade_id,
            status=OrderStatus.SUBMITTED,
            submitted_at=datetime.now(timezone.utc),
            metadata={"bracket_leg": leg, "limit_price": price, "trigger": group.trigger_order_id},
        )
        if not self.ledger.try_record_submission(record):
            return None

        spec = OrderSpec(
            client_order_id=client_order_id,
            trade_id=trade.trade_id,
            symbol=trade.symbol,
            side=group.exit_side,
            quantity=trade.quantity,
            limit_price=price,
            order_type=order_type,
        )
        timeout = self.config.submit_timeout_seconds
        try:
            result = await asyncio.wait_for(self.broker.submit(spec), timeout=timeout)
        except Exception as e:
            reason = (
                f"timed out after {timeout}s" if isinstance(e, asyncio.TimeoutError)
                else get_error_message(e)
            )
            message = f"{leg} bracket leg @ {price:.4f} not placed: {reason}"
            self.ledger.mark_failed(client_order_id, message)
            trade.errors.append(message)
            logger.error(f"[BRACKET] {trade.trade_id} {message}")
            return None

        self.ledger.confirm_submission(client_order_id, result.broker_order_id)
        if leg == "TP":
            self.ledger.update_group(group.trigger_order_id, tp_order_id=result.broker_order_id)
        else:
            self.ledger.update_group(group.trigger_order_id, sl_order_id=result.broker_order_id)

        if trade.state != TradeState.FILLED:
            # Trade closed while the leg was in flight
            if result.status == "filled":
                message = (
                    f"{leg} bracket leg {result.broker_order_id} filled after the trade "
                    f"closed; manual review required"
                )
                trade.errors.append(message)
                logger.error(f"[BRACKET] {trade.trade_id} {message}")
            else:
                await self._cancel_leg(trade, result.broker_order_id)
            return None

        self._broker_orders[result.broker_order_id] = trade.trade_id
        logger.info(
            f"[BRACKET] {trade.trade_id} {leg} {order_type} {group.exit_side.upper()} "
            f"@ ${price:.2f} placed (order {result.broker_order_id})"
        )
        return result

    async def _cancel_bracket_legs(self, trade: Trade) -> None:
        """Cancel every leg that is still open once the trade is finished."""
        for group in self.ledger.get_all_groups():
            if group.trade_id != trade.trade_id:
                continue
            for broker_order_id in group.open_leg_ids():
                await self._cancel_leg(trade, broker_order_id)

    async def _cancel_leg(self, trade: Trade, broker_order_id: str) -> None:
        try:
            cancelled = await asyncio.wait_for(
                self.broker.cancel(broker_order_id),
                timeout=self.config.submit_timeout_seconds,
            )
        except Exception as e:
            message = f"Cancel of bracket leg {broker_order_id} failed: {get_error_message(e)}"
            logger.error(f"[BRACKET] {trade.trade_id} {message}")
            trade.errors.append(message)
            return

        if cancelled:
            logger.info(f"[BRACKET] {trade.trade_id} cancelled open leg {broker_order_id}")
        else:
            logger.warning(f"[BRACKET] {trade.trade_id} leg {broker_order_id} already filled")

    def get_brackets(self, trade_id: str | None = None) -> list[BracketGroup]:
        """Bracket groups in the ledger, optionally for one trade."""
        groups = self.ledger.get_all_groups()
        if trade_id is not None:
            groups = [g for g in groups if g.trade_id == trade_id]
        return groups

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def sweep_timeouts(self) -> int:
        """Queue a timeout check for every trade that has not filled yet."""
        queued = 0
        for actor in list(self._actors.values()):
            if actor.trade.state in (TradeState.PENDING, TradeState.WORKING, TradeState.CHASING):
                actor.queue.put_nowait(TimeoutCheck())
                queued += 1
        return queued

    async def _timeout_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.timeout_check_interval)
                self.sweep_timeouts()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[MANAGER] Timeout sweep error: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_trade(self, trade_id: str) -> Trade | None:
        actor = self._actors.get(trade_id)
        return actor.trade if actor else None

    def get_trades(self) -> list[Trade]:
        """All trades that have not been archived yet."""
        return [actor.trade for actor in self._actors.values()]

    @property
    def stats(self) -> dict[str, Any]:
        by_state: dict[str, int] = {}
        for actor in self._actors.values():
            state = actor.trade.state.value
            by_state[state] = by_state.get(state, 0) + 1
        return {
            "liveTrades": len(self._actors),
            "byState": by_state,
            "archivedTrades": len(self.history),
            "strategy": self.strategy.value,
        }
