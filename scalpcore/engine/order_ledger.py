"""Idempotent order ledger.

Tracks client-side order ids so a logical order is never submitted to the
broker twice, even across client retries or ambiguous network failures.

Key principle: every logical order gets a client order id before its
first submission. Retries of that order reuse the same id.

Records are persisted to SQLite so they survive process restarts, and any
record older than the retention window (24h from ``submitted_at``) is
purged on startup and on an hourly cadence regardless of status.

The ledger also keeps bracket groups: the take-profit and stop-loss exit
orders linked to a filled entry order, under the same persistence and
retention rules.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator
from uuid import uuid4

from scalpcore.errors import NotFoundError
from scalpcore.models.orders import (
    ALLOWED_STATUS_TRANSITIONS,
    BracketGroup,
    OrderRecord,
    OrderStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_CLEANUP_INTERVAL = 3600.0


def _group_to_json(group: BracketGroup) -> dict[str, Any]:
    return {
        "trigger_order_id": group.trigger_order_id,
        "trade_id": group.trade_id,
        "side": group.side,
        "entry_price": group.entry_price,
        "tp_pct": group.tp_pct,
        "sl_pct": group.sl_pct,
        "tp_order_id": group.tp_order_id,
        "sl_order_id": group.sl_order_id,
        "filled_leg": group.filled_leg,
        "created_at": group.created_at.isoformat(),
        "updated_at": group.updated_at.isoformat(),
        "metadata": group.metadata,
    }


def _group_from_json(raw: str) -> BracketGroup:
    data = json.loads(raw)
    data["created_at"] = datetime.fromisoformat(data["created_at"])
    data["updated_at"] = datetime.fromisoformat(data["updated_at"])
    return BracketGroup(**data)


@dataclass
class LedgerStats:
    """Read-only ledger summary."""

    total: int
    by_status: dict[str, int] = field(default_factory=dict)
    avg_retry_count: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "byStatus": dict(self.by_status),
            "avgRetryCount": round(self.avg_retry_count, 3),
        }


class OrderLedger:
    """Single source of truth for "has this logical order reached the broker".

    All mutations of one client order id are serialized by a per-key lock;
    unrelated ids never wait on each other.

    Usage:
        ledger = OrderLedger(db_path=Path("cache/orders.db"))

        client_order_id = ledger.new_client_order_id()
        if not ledger.is_submitted(client_order_id):
            ledger.record_submission(OrderRecord(...status=OrderStatus.SUBMITTED...))
            # dispatch to broker
        ledger.confirm_submission(client_order_id, broker_order_id)
    """

    def __init__(
        self,
        db_path: Path | None = None,
        retention: timedelta = DEFAULT_RETENTION,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ):
        self._orders: dict[str, OrderRecord] = {}
        self._groups: dict[str, BracketGroup] = {}
        self._db_path = db_path
        self._retention = retention
        self._cleanup_interval = cleanup_interval

        self._locks_guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._groups_lock = threading.Lock()

        self._running = False
        self._cleanup_task: asyncio.Task | None = None

        if self._db_path:
            self._init_db(self._db_path)
            self._load_from_db(self._db_path)

        removed = self.cleanup()
        logger.info(
            f"Order ledger initialized (db: {self._db_path or 'memory-only'}, "
            f"loaded {len(self._orders)} orders, purged {removed})"
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _init_db(self, db_path: Path) -> None:
        """Initialize SQLite database with orders and bracket group tables."""
        db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    client_order_id TEXT PRIMARY KEY,
                    trade_id TEXT,
                    status TEXT,
                    submitted_at TEXT,
                    confirmed_at TEXT,
                    broker_order_id TEXT,
                    retry_count INTEGER,
                    error TEXT,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bracket_groups (
                    trigger_order_id TEXT PRIMARY KEY,
                    trade_id TEXT,
                    created_at TEXT,
                    data TEXT
                )
            """)
            conn.commit()

    def _load_from_db(self, db_path: Path) -> None:
        """Load order records and bracket groups from database."""
        with sqlite3.connect(db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute("SELECT * FROM orders")
            for row in cursor:
                record = OrderRecord(
                    client_order_id=row["client_order_id"],
                    trade_id=row["trade_id"],
                    status=OrderStatus(row["status"]),
                    submitted_at=datetime.fromisoformat(row["submitted_at"]),
                    confirmed_at=(
                        datetime.fromisoformat(row["confirmed_at"])
                        if row["confirmed_at"] else None
                    ),
                    broker_order_id=row["broker_order_id"],
                    retry_count=row["retry_count"] or 0,
                    error=row["error"],
                    metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                )
                self._orders[record.client_order_id] = record

            for row in conn.execute("SELECT data FROM bracket_groups"):
                group = _group_from_json(row["data"])
                self._groups[group.trigger_order_id] = group

    def _save(self, record: OrderRecord) -> None:
        """Save or update a record in the database."""
        if not self._db_path:
            return
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO orders (
                    client_order_id, trade_id, status, submitted_at, confirmed_at,
                    broker_order_id, retry_count, error, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.client_order_id, record.trade_id, record.status.value,
                record.submitted_at.isoformat(),
                record.confirmed_at.isoformat() if record.confirmed_at else None,
                record.broker_order_id, record.retry_count, record.error,
                json.dumps(record.metadata, default=str),
            ))
            conn.commit()

    def _delete(self, client_order_ids: list[str]) -> None:
        if not self._db_path or not client_order_ids:
            return
        with sqlite3.connect(self._db_path) as conn:
            conn.executemany(
                "DELETE FROM orders WHERE client_order_id = ?",
                [(cid,) for cid in client_order_ids],
            )
            conn.commit()

    def _save_group(self, group: BracketGroup) -> None:
        if not self._db_path:
            return
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO bracket_groups (
                    trigger_order_id, trade_id, created_at, data
                ) VALUES (?, ?, ?, ?)
            """, (
                group.trigger_order_id, group.trade_id, group.created_at.isoformat(),
                json.dumps(_group_to_json(group), default=str),
            ))
            conn.commit()

    def _delete_groups(self, trigger_order_ids: list[str]) -> None:
        if not self._db_path or not trigger_order_ids:
            return
        with sqlite3.connect(self._db_path) as conn:
            conn.executemany(
                "DELETE FROM bracket_groups WHERE trigger_order_id = ?",
                [(tid,) for tid in trigger_order_ids],
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, client_order_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._key_locks.setdefault(client_order_id, threading.Lock())
        with lock:
            yield

    def _set_status(self, record: OrderRecord, status: OrderStatus) -> bool:
        if status == record.status:
            return True
        if status not in ALLOWED_STATUS_TRANSITIONS[record.status]:
            logger.warning(
                f"[LEDGER] Ignoring status change {record.status.value} -> {status.value} "
                f"for {record.client_order_id}"
            )
            return False
        record.status = status
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def new_client_order_id(self) -> str:
        """Generate a fresh client order id.

        Call exactly once per logical order, before any submission attempt.
        """
        return f"client-{uuid4().hex}"

    def is_submitted(self, client_order_id: str) -> bool:
        """True if the order is already at (or on its way to) the broker."""
        record = self._orders.get(client_order_id)
        return record is not None and record.status in (
            OrderStatus.SUBMITTED,
            OrderStatus.CONFIRMED,
        )

    def get_order(self, client_order_id: str) -> OrderRecord | None:
        return self._orders.get(client_order_id)

    def _upsert(self, record: OrderRecord) -> None:
        existing = self._orders.get(record.client_order_id)
        if existing is None:
            self._orders[record.client_order_id] = record
            self._save(record)
            return

        if existing.trade_id != record.trade_id:
            logger.error(
                f"[LEDGER] {record.client_order_id} belongs to trade {existing.trade_id}, "
                f"not {record.trade_id}; ignoring"
            )
            return

        if not self._set_status(existing, record.status):
            return

        # submitted_at stays pinned to the first dispatch for retention
        existing.retry_count = max(existing.retry_count, record.retry_count)
        existing.metadata.update(record.metadata)
        if record.status == OrderStatus.SUBMITTED:
            existing.error = None
        self._save(existing)

    def record_submission(self, record: OrderRecord) -> None:
        """Upsert a record when a submission attempt is dispatched."""
        with self._locked(record.client_order_id):
            self._upsert(record)
        logger.debug(
            f"[LEDGER] Recorded {record.client_order_id} ({record.status.value}) "
            f"for trade {record.trade_id}"
        )

    def try_record_submission(self, record: OrderRecord) -> bool:
        """Atomically check ``is_submitted`` and record the submission.

        Returns:
            True if the caller now owns the submission and may dispatch,
            False if the id was already submitted or confirmed.
        """
        with self._locked(record.client_order_id):
            existing = self._orders.get(record.client_order_id)
            if existing is not None and existing.status in (
                OrderStatus.SUBMITTED,
                OrderStatus.CONFIRMED,
            ):
                existing.metadata["duplicate_attempts"] = (
                    existing.metadata.get("duplicate_attempts", 0) + 1
                )
                self._save(existing)
                logger.warning(
                    f"[LEDGER] Duplicate submission attempt blocked for "
                    f"{record.client_order_id} (status: {existing.status.value})"
                )
                return False
            self._upsert(record)
            return True

    def confirm_submission(self, client_order_id: str, broker_order_id: str) -> OrderRecord:
        """Mark an order as acknowledged by the broker.

        Raises:
            NotFoundError: If the id is unknown.
        """
        with self._locked(client_order_id):
            record = self._orders.get(client_order_id)
            if record is None:
                raise NotFoundError(client_order_id)

            if record.status == OrderStatus.CONFIRMED:
                if record.broker_order_id != broker_order_id:
                    logger.error(
                        f"[LEDGER] {client_order_id} already confirmed as "
                        f"{record.broker_order_id}, ignoring {broker_order_id}"
                    )
                return record

            if record.status == OrderStatus.FAILED:
                logger.warning(
                    f"[LEDGER] Late confirmation for failed order {client_order_id} "
                    f"(broker order {broker_order_id})"
                )

            if self._set_status(record, OrderStatus.CONFIRMED):
                record.broker_order_id = broker_order_id
                record.confirmed_at = datetime.now(timezone.utc)
                self._save(record)
            return record

    def increment_retry(self, client_order_id: str) -> int:
        """Bump the retry count before resubmitting the same logical order.

        Raises:
            NotFoundError: If the id is unknown.
        """
        with self._locked(client_order_id):
            record = self._orders.get(client_order_id)
            if record is None:
                raise NotFoundError(client_order_id)
            record.retry_count += 1
            self._save(record)
            return record.retry_count

    def mark_failed(self, client_order_id: str, error: str) -> None:
        """Mark an order as failed. Unknown ids are ignored."""
        with self._locked(client_order_id):
            record = self._orders.get(client_order_id)
            if record is None:
                # Already evicted by cleanup
                return
            if self._set_status(record, OrderStatus.FAILED):
                record.error = error
                self._save(record)

    def mark_duplicate(self, client_order_id: str) -> None:
        """Flag a non-terminal record as a detected repeat submission.

        Raises:
            NotFoundError: If the id is unknown.
        """
        with self._locked(client_order_id):
            record = self._orders.get(client_order_id)
            if record is None:
                raise NotFoundError(client_order_id)
            if self._set_status(record, OrderStatus.DUPLICATE):
                self._save(record)

    def get_orders_by_trade(self, trade_id: str) -> list[OrderRecord]:
        return [r for r in self._orders.values() if r.trade_id == trade_id]

    def get_all_orders(self) -> list[OrderRecord]:
        return list(self._orders.values())

    def get_stats(self) -> LedgerStats:
        """Counts by status and mean retry count."""
        orders = list(self._orders.values())
        by_status: dict[str, int] = {}
        total_retries = 0
        for order in orders:
            by_status[order.status.value] = by_status.get(order.status.value, 0) + 1
            total_retries += order.retry_count

        return LedgerStats(
            total=len(orders),
            by_status=by_status,
            avg_retry_count=total_retries / len(orders) if orders else 0.0,
        )

    def cleanup(self, now: datetime | None = None) -> int:
        """Purge orders (by ``submitted_at``) and bracket groups (by
        ``created_at``) older than the retention window.

        Returns:
            Number of orders and groups removed.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        cutoff = now - self._retention

        stale = [
            cid for cid, record in list(self._orders.items())
            if record.submitted_at < cutoff
        ]
        for cid in stale:
            with self._locked(cid):
                self._orders.pop(cid, None)
            with self._locks_guard:
                self._key_locks.pop(cid, None)
        self._delete(stale)

        with self._groups_lock:
            stale_groups = [
                tid for tid, group in self._groups.items() if group.created_at < cutoff
            ]
            for tid in stale_groups:
                del self._groups[tid]
        self._delete_groups(stale_groups)

        if stale or stale_groups:
            logger.info(
                f"[LEDGER] Purged {len(stale)} orders and {len(stale_groups)} bracket "
                f"groups older than {self._retention}"
            )
        return len(stale) + len(stale_groups)

    def clear(self) -> None:
        """Remove every record (tests and manual resets)."""
        ids = list(self._orders)
        self._orders.clear()
        self._delete(ids)
        with self._groups_lock:
            group_ids = list(self._groups)
            self._groups.clear()
        self._delete_groups(group_ids)

    # ------------------------------------------------------------------
    # Bracket groups
    # ------------------------------------------------------------------

    def store_group(self, group: BracketGroup) -> None:
        """Store (or overwrite) the bracket group for an entry order."""
        with self._groups_lock:
            self._groups[group.trigger_order_id] = group
            self._save_group(group)
        logger.info(
            f"[LEDGER] Stored bracket group for {group.trigger_order_id} "
            f"(trade {group.trade_id}, TP +{group.tp_pct}%, SL -{group.sl_pct}%)"
        )

    def get_group(self, trigger_order_id: str) -> BracketGroup | None:
        return self._groups.get(trigger_order_id)

    def update_group(
        self,
        trigger_order_id: str,
        tp_order_id: str | None = None,
        sl_order_id: str | None = None,
        filled_leg: str | None = None,
        **metadata: Any,
    ) -> BracketGroup:
        """Attach leg order ids, record the filled leg, or merge metadata.

        Raises:
            NotFoundError: If no group exists for the trigger order.
        """
        with self._groups_lock:
            group = self._groups.get(trigger_order_id)
            if group is None:
                raise NotFoundError(trigger_order_id)
            if tp_order_id is not None:
                group.tp_order_id = tp_order_id
            if sl_order_id is not None:
                group.sl_order_id = sl_order_id
            if filled_leg is not None:
                if filled_leg not in ("TP", "SL"):
                    raise ValueError(f"Unknown bracket leg: {filled_leg}")
                group.filled_leg = filled_leg
            group.metadata.update(metadata)
            group.updated_at = datetime.now(timezone.utc)
            self._save_group(group)
            return group

    def get_group_by_order_id(self, broker_order_id: str) -> BracketGroup | None:
        """Find the group whose TP or SL leg is ``broker_order_id``."""
        for group in list(self._groups.values()):
            if group.leg_for(broker_order_id) is not None:
                return group
        return None

    def get_all_groups(self) -> list[BracketGroup]:
        return list(self._groups.values())

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._running:
            logger.warning("Order ledger cleanup already running")
            return

        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Order ledger cleanup started (interval: {self._cleanup_interval}s)")

    async def stop(self) -> None:
        """Stop the periodic cleanup task."""
        self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        logger.info("Order ledger cleanup stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[LEDGER] Error in cleanup loop: {e}")
