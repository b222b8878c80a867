"""Execution engine for ScalpCore.

Provides:
- Idempotent order ledger with bracket exit groups
- Trade lifecycle state machine
- Actor-per-trade manager
- Trade history and reporting
"""

from scalpcore.engine.lifecycle import (
    VALID_TRANSITIONS,
    CancelOrder,
    ChaseInfo,
    ExitReason,
    StateTransition,
    SubmitOrder,
    Trade,
    TradeLifecycle,
    TradeState,
    is_terminal_state,
    is_valid_transition,
)
from scalpcore.engine.order_ledger import LedgerStats, OrderLedger
from scalpcore.engine.trade_history import TradeHistoryStore, TradeReport
from scalpcore.engine.trade_manager import TradeManager

__all__ = [
    "VALID_TRANSITIONS",
    "CancelOrder",
    "ChaseInfo",
    "ExitReason",
    "LedgerStats",
    "OrderLedger",
    "StateTransition",
    "SubmitOrder",
    "Trade",
    "TradeHistoryStore",
    "TradeLifecycle",
    "TradeManager",
    "TradeReport",
    "TradeState",
    "is_terminal_state",
    "is_valid_transition",
]
