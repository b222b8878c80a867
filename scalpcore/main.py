"""FastAPI application entry point for ScalpCore.

Provides:
- REST endpoints to open, cancel and close trades
- Read-only views of live trades, the order ledger and trade history
- Simulation wiring (synthetic quotes + mock broker)

Usage:
    uvicorn scalpcore.main:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from scalpcore.chase.strategies import ChaseStrategy, list_strategies
from scalpcore.config import AppConfig, load_config
from scalpcore.data.broker import MockBroker
from scalpcore.data.quote_bus import QuoteBus
from scalpcore.data.staleness import StalenessChecker, StalenessThresholds
from scalpcore.engine.lifecycle import ExitReason, StateTransition, TradeState
from scalpcore.engine.order_ledger import OrderLedger
from scalpcore.engine.trade_history import TradeHistoryStore
from scalpcore.engine.trade_manager import TradeManager
from scalpcore.errors import InvalidTransitionError, UnknownStrategyError
from scalpcore.models.market_data import Greeks, MarketSnapshot, MarketTick

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

SUPPORTED_TRADING_MODES = ("simulation",)

# Global state
app_config: AppConfig | None = None
trade_manager: TradeManager | None = None
order_ledger: OrderLedger | None = None
trade_history: TradeHistoryStore | None = None
mock_broker: MockBroker | None = None
quote_bus: QuoteBus | None = None
started_at: datetime | None = None


def _log_transition(transition: StateTransition) -> None:
    logger.debug(
        f"[TRADE] {transition.trade_id} {transition.from_state.value} -> "
        f"{transition.to_state.value}"
    )


async def _on_quote(tick: MarketTick) -> None:
    """Feed a simulated quote to the broker (fills) and then to the trades."""
    snapshot = MarketSnapshot.from_tick(tick)
    if mock_broker:
        filled = mock_broker.update_quote(snapshot)
        await mock_broker.notify_fills(filled)
    if trade_manager:
        await trade_manager.on_tick(snapshot)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    global app_config, trade_manager, order_ledger, trade_history
    global mock_broker, quote_bus, started_at

    logger.info("Starting ScalpCore server...")

    app_config = load_config()
    logging.getLogger().setLevel(app_config.log_level.upper())

    if app_config.trading_mode not in SUPPORTED_TRADING_MODES:
        raise ValueError(
            f"Unsupported TRADING_MODE: {app_config.trading_mode} "
            f"(supported: {', '.join(SUPPORTED_TRADING_MODES)})"
        )

    order_ledger = OrderLedger(
        db_path=app_config.ledger.db_path,
        retention=timedelta(hours=app_config.ledger.retention_hours),
        cleanup_interval=app_config.ledger.cleanup_interval_seconds,
    )
    trade_history = TradeHistoryStore(db_path=app_config.history_db_path)
    mock_broker = MockBroker()

    trade_manager = TradeManager(
        broker=mock_broker,
        ledger=order_ledger,
        config=app_config.lifecycle,
        strategy=app_config.strategy,
        history=trade_history,
        staleness=StalenessChecker(
            StalenessThresholds(quote=app_config.quote_stale_threshold)
        ),
        timeout_check_interval=app_config.timeout_check_interval,
        on_transition=_log_transition,
    )
    await trade_manager.start()

    quote_bus = QuoteBus(app_config.watchlist)
    for symbol in quote_bus.symbols:
        quote_bus.subscribe(symbol, _on_quote)
    await quote_bus.start()

    started_at = datetime.now(timezone.utc)
    logger.info(
        f"ScalpCore ready (mode: {app_config.trading_mode}, "
        f"profile: {app_config.profile.profile_id}, strategy: {app_config.strategy.value})"
    )

    yield

    # Shutdown
    logger.info("Shutting down ScalpCore server...")

    if quote_bus:
        await quote_bus.stop()

    if trade_manager:
        await trade_manager.stop()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="ScalpCore API",
    description="Order execution core for short-dated index option scalping",
    version="0.1.0",
    lifespan=lifespan,
)


def _require_manager() -> TradeManager:
    if trade_manager is None:
        raise HTTPException(status_code=503, detail="Trade manager not running")
    return trade_manager


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy" if trade_manager and trade_manager.is_running else "starting",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "startedAt": started_at.isoformat() if started_at else None,
        "tradingMode": app_config.trading_mode if app_config else None,
        "profile": app_config.profile.version_tag if app_config else None,
        "strategy": app_config.strategy.value if app_config else None,
        "strategies": [s.value for s in list_strategies()],
        "trades": trade_manager.stats if trade_manager else None,
    }


@app.get("/api/trades")
async def get_trades() -> dict[str, Any]:
    """List live (not yet archived) trades."""
    manager = _require_manager()
    return {"trades": [t.to_dict() for t in manager.get_trades()]}


@app.get("/api/trades/{trade_id}")
async def get_trade(trade_id: str) -> dict[str, Any]:
    """Get a live or archived trade by id."""
    manager = _require_manager()
    trade = manager.get_trade(trade_id)
    if trade is not None:
        return {"trade": trade.to_dict(), "archived": False}

    archived = trade_history.get(trade_id) if trade_history else None
    if archived is None:
        raise HTTPException(status_code=404, detail=f"Trade not found: {trade_id}")
    return {"trade": archived, "archived": True}


class OpenTradeRequest(BaseModel):
    """Request body for opening a trade."""
    underlying: str
    limit_price: float = Field(gt=0)
    side: Literal["buy", "sell"] = "buy"
    quantity: int = Field(default=1, gt=0)
    symbol: str | None = None
    strategy: str | None = None
    delta: float | None = None


@app.post("/api/trades")
async def open_trade(request: OpenTradeRequest) -> dict[str, Any]:
    """Open a trade and submit its initial limit order."""
    manager = _require_manager()

    try:
        strategy = ChaseStrategy.from_name(request.strategy) if request.strategy else None
    except UnknownStrategyError as e:
        raise HTTPException(status_code=400, detail=e.message)

    greeks = Greeks(delta=request.delta) if request.delta is not None else None

    try:
        trade = await manager.open_trade(
            underlying=request.underlying,
            limit_price=request.limit_price,
            side=request.side,
            quantity=request.quantity,
            symbol=request.symbol,
            strategy=strategy,
            greeks=greeks,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await manager.wait_idle(trade.trade_id)
    return {"trade": trade.to_dict()}


class CancelTradeRequest(BaseModel):
    """Request body for cancelling a trade."""
    reason: str = "user cancel"


@app.post("/api/trades/{trade_id}/cancel")
async def cancel_trade(
    trade_id: str,
    request: CancelTradeRequest | None = None,
) -> dict[str, Any]:
    """Cancel a working or chasing trade.

    The cancel is queued behind any in-flight submission; the response
    reflects the trade after the queue has drained.
    """
    manager = _require_manager()
    trade = manager.get_trade(trade_id)
    if trade is None:
        raise HTTPException(status_code=404, detail=f"Trade not found: {trade_id}")
    if trade.state not in (TradeState.WORKING, TradeState.CHASING):
        raise HTTPException(
            status_code=409,
            detail=f"Trade {trade_id} cannot be cancelled in state {trade.state.value}",
        )

    reason = request.reason if request else "user cancel"
    await manager.request_cancel(trade_id, reason)
    await manager.wait_idle(trade_id)
    return {"trade": trade.to_dict()}


class CloseTradeRequest(BaseModel):
    """Request body for closing a filled trade."""
    exit_price: float = Field(gt=0)
    exit_reason: ExitReason = ExitReason.MANUAL


@app.post("/api/trades/{trade_id}/close")
async def close_trade(trade_id: str, request: CloseTradeRequest) -> dict[str, Any]:
    """Record the exit of a filled trade."""
    manager = _require_manager()
    try:
        trade = await manager.close_trade(trade_id, request.exit_reason, request.exit_price)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Trade not found: {trade_id}")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)

    archived = trade_history.get(trade_id) if trade_history else None
    return {"trade": trade.to_dict(), "report": archived.get("report") if archived else None}


class BracketRequest(BaseModel):
    """Request body for take-profit / stop-loss exit orders."""
    tp_pct: float = Field(gt=0, description="Take profit distance, percent of entry")
    sl_pct: float = Field(gt=0, description="Stop loss distance, percent of entry")


@app.post("/api/trades/{trade_id}/brackets")
async def attach_brackets(trade_id: str, request: BracketRequest) -> dict[str, Any]:
    """Place TP and SL exit legs on a filled trade."""
    manager = _require_manager()
    try:
        group = await manager.attach_brackets(trade_id, request.tp_pct, request.sl_pct)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Trade not found: {trade_id}")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"bracket": group.to_dict()}


@app.get("/api/brackets")
async def get_brackets(trade_id: str | None = None) -> dict[str, Any]:
    """List bracket groups, optionally for one trade."""
    manager = _require_manager()
    return {"brackets": [g.to_dict() for g in manager.get_brackets(trade_id)]}


@app.get("/api/orders")
async def get_orders(trade_id: str | None = None) -> dict[str, Any]:
    """List ledger records, optionally for one trade."""
    if order_ledger is None:
        raise HTTPException(status_code=503, detail="Order ledger not running")
    orders = (
        order_ledger.get_orders_by_trade(trade_id) if trade_id
        else order_ledger.get_all_orders()
    )
    return {"orders": [o.to_dict() for o in orders]}


@app.get("/api/orders/stats")
async def get_order_stats() -> dict[str, Any]:
    """Ledger counts by status and mean retry count."""
    if order_ledger is None:
        raise HTTPException(status_code=503, detail="Order ledger not running")
    return order_ledger.get_stats().to_dict()


@app.get("/api/history")
async def get_history(
    state: str | None = None,
    underlying: str | None = None,
    limit: int = 50,
) -> dict[str, Any]:
    """Archived trades and reports for closed trades."""
    if trade_history is None:
        raise HTTPException(status_code=503, detail="Trade history not available")
    try:
        trades = trade_history.list_trades(state=state, underlying=underlying, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "trades": trades,
        "reports": [t["report"] for t in trades if "report" in t],
    }
