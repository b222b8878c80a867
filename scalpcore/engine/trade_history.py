"""Trade history persistence and reporting.

Terminal trades are archived here once the manager is done with them.
``TradeReport`` is the flat projection handed to the reporting side:
entry, exit, P/L, exit reason, duration and chase metadata.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from scalpcore.engine.lifecycle import Trade, TradeState

logger = logging.getLogger(__name__)

# Equity/index options: one contract controls 100 units
CONTRACT_MULTIPLIER = 100


@dataclass
class TradeReport:
    """Reporting projection of a closed trade.

    Attributes:
        trade_id: Trade id
        underlying: Underlying symbol
        entry: Entry fill price
        exit: Exit price
        pl_dollar: Realized P/L in dollars (multiplier and quantity applied)
        pl_percent: Realized P/L as a percent of entry
        exit_reason: TP, SL, TIME or MANUAL
        duration: Minutes from fill to close
        chase_info: Attempts, initial/final price, chase time, strategy
    """

    trade_id: str
    underlying: str
    entry: float
    exit: float
    pl_dollar: float
    pl_percent: float
    exit_reason: str
    duration: float
    chase_info: dict[str, Any]

    @classmethod
    def from_trade(cls, trade: Trade) -> "TradeReport":
        """Build a report from a CLOSED trade.

        Raises:
            ValueError: If the trade has not been closed.
        """
        if (
            trade.state != TradeState.CLOSED
            or trade.entry_price is None
            or trade.exit_price is None
            or trade.exit_reason is None
        ):
            raise ValueError(f"Trade {trade.trade_id} is not closed")

        direction = 1 if trade.side == "buy" else -1
        per_contract = (trade.exit_price - trade.entry_price) * direction
        pl_dollar = per_contract * CONTRACT_MULTIPLIER * trade.quantity
        pl_percent = per_contract / trade.entry_price * 100 if trade.entry_price else 0.0

        duration = 0.0
        if trade.filled_at and trade.closed_at:
            duration = (trade.closed_at - trade.filled_at).total_seconds() / 60

        return cls(
            trade_id=trade.trade_id,
            underlying=trade.underlying,
            entry=trade.entry_price,
            exit=trade.exit_price,
            pl_dollar=round(pl_dollar, 2),
            pl_percent=round(pl_percent, 2),
            exit_reason=trade.exit_reason.value,
            duration=round(duration, 2),
            chase_info=trade.chase_info.to_dict(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tradeId": self.trade_id,
            "underlying": self.underlying,
            "entry": self.entry,
            "exit": self.exit,
            "plDollar": self.pl_dollar,
            "plPercent": self.pl_percent,
            "exitReason": self.exit_reason,
            "duration": self.duration,
            "chaseInfo": self.chase_info,
        }


class TradeHistoryStore:
    """Archive of terminal trades.

    Persists to SQLite when a path is given, otherwise keeps trades in
    memory only.

    Usage:
        store = TradeHistoryStore(db_path=Path("cache/trades.db"))
        store.save(trade)
        closed = store.list_trades(state=TradeState.CLOSED)
    """

    def __init__(self, db_path: Path | None = None):
        self._db_path = db_path
        self._trades: dict[str, dict[str, Any]] = {}

        if db_path:
            self._init_db(db_path)
            self._load_from_db(db_path)

        logger.info(
            f"Trade history initialized (db: {self._db_path or 'memory-only'}, "
            f"{len(self._trades)} trades)"
        )

    def _init_db(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    trade_id TEXT PRIMARY KEY,
                    underlying TEXT,
                    state TEXT,
                    created_at TEXT,
                    data TEXT
                )
            """)
            conn.commit()

    def _load_from_db(self, db_path: Path) -> None:
        with sqlite3.connect(db_path) as conn:
            conn.row_factory = sqlite3.Row
            for row in conn.execute("SELECT trade_id, data FROM trades"):
                self._trades[row["trade_id"]] = json.loads(row["data"])

    def save(self, trade: Trade) -> dict[str, Any]:
        """Archive a trade (insert or replace). Returns the stored record."""
        record = trade.to_dict()
        if trade.state == TradeState.CLOSED:
            record["report"] = TradeReport.from_trade(trade).to_dict()

        self._trades[trade.trade_id] = record

        if self._db_path:
            with sqlite3.connect(self._db_path) as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO trades (trade_id, underlying, state, created_at, data)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    trade.trade_id,
                    trade.underlying,
                    trade.state.value,
                    trade.created_at.isoformat(),
                    json.dumps(record, default=str),
                ))
                conn.commit()

        logger.debug(f"[HISTORY] Archived {trade.trade_id} ({trade.state.value})")
        return record

    def get(self, trade_id: str) -> dict[str, Any] | None:
        return self._trades.get(trade_id)

    def list_trades(
        self,
        state: TradeState | str | None = None,
        underlying: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List archived trades, newest first.

        Args:
            state: Only trades in this final state
            underlying: Only trades on this underlying
            limit: Maximum number of trades returned
        """
        state_value = TradeState(state).value if state is not None else None

        trades = [
            t for t in self._trades.values()
            if (state_value is None or t["state"] == state_value)
            and (underlying is None or t["underlying"] == underlying.upper())
        ]
        trades.sort(key=lambda t: t["createdAt"], reverse=True)
        if limit is not None:
            trades = trades[:limit]
        return trades

    def reports(self) -> list[dict[str, Any]]:
        """Reporting projections of every closed trade."""
        return [t["report"] for t in self.list_trades(state=TradeState.CLOSED) if "report" in t]

    def __len__(self) -> int:
        return len(self._trades)
