"""Unit tests for trade history and the reporting projection."""

from datetime import datetime, timedelta, timezone

import pytest

from scalpcore.engine.lifecycle import ChaseInfo, ExitReason, Trade, TradeState
from scalpcore.engine.trade_history import TradeHistoryStore, TradeReport

T0 = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def make_closed_trade(
    trade_id: str = "trade-1",
    underlying: str = "SPX",
    entry: float = 2.50,
    exit_price: float = 3.10,
    quantity: int = 2,
    side: str = "buy",
    created_at: datetime = T0,
) -> Trade:
    trade = Trade(
        trade_id=trade_id,
        underlying=underlying,
        side=side,
        quantity=quantity,
        chase_info=ChaseInfo(
            initial_price=2.40,
            strategy_name="time-weighted",
            attempts=3,
            final_price=entry,
            total_time_ms=4200.0,
        ),
        created_at=created_at,
    )
    trade.state = TradeState.CLOSED
    trade.entry_price = entry
    trade.exit_price = exit_price
    trade.exit_reason = ExitReason.TP
    trade.filled_at = created_at + timedelta(seconds=5)
    trade.closed_at = trade.filled_at + timedelta(minutes=12)
    return trade


class TestTradeReport:
    """Tests for the reporting projection."""

    def test_report_fields(self):
        """Report computes P/L with the 100x multiplier and duration in minutes."""
        report = TradeReport.from_trade(make_closed_trade())

        assert report.entry == 2.50
        assert report.exit == 3.10
        assert report.pl_dollar == pytest.approx(120.0)
        assert report.pl_percent == pytest.approx(24.0)
        assert report.exit_reason == "TP"
        assert report.duration == pytest.approx(12.0)
        assert report.chase_info["attempts"] == 3

    def test_short_side_pl(self):
        """Short trades profit when the exit is below the entry."""
        report = TradeReport.from_trade(make_closed_trade(side="sell", exit_price=2.00, quantity=1))

        assert report.pl_dollar == pytest.approx(50.0)

    def test_to_dict_uses_camel_case(self):
        """Reports serialize with camelCase keys."""
        data = TradeReport.from_trade(make_closed_trade()).to_dict()

        assert set(data) >= {"entry", "exit", "plDollar", "plPercent", "exitReason", "duration", "chaseInfo"}
        assert data["chaseInfo"]["initialPrice"] == 2.40
        assert data["chaseInfo"]["strategy"] == "time-weighted"

    def test_open_trade_has_no_report(self):
        """Reports require a closed trade."""
        trade = make_closed_trade()
        trade.state = TradeState.FILLED

        with pytest.raises(ValueError):
            TradeReport.from_trade(trade)


class TestTradeHistoryStore:
    """Tests for the archive."""

    def test_save_and_get(self):
        """Saved trades round-trip with their report."""
        store = TradeHistoryStore()

        store.save(make_closed_trade())

        record = store.get("trade-1")
        assert record["state"] == "CLOSED"
        assert record["report"]["plDollar"] == pytest.approx(120.0)
        assert len(store) == 1

    def test_cancelled_trade_has_no_report(self):
        """Cancelled trades are stored without a report."""
        store = TradeHistoryStore()
        trade = make_closed_trade()
        trade.state = TradeState.CANCELLED

        record = store.save(trade)

        assert "report" not in record
        assert store.reports() == []

    def test_list_filters_and_orders(self):
        """Listing filters by state and underlying, newest first."""
        store = TradeHistoryStore()
        store.save(make_closed_trade("t1", created_at=T0))
        store.save(make_closed_trade("t2", underlying="QQQ", created_at=T0 + timedelta(minutes=1)))
        cancelled = make_closed_trade("t3", created_at=T0 + timedelta(minutes=2))
        cancelled.state = TradeState.CANCELLED
        store.save(cancelled)

        assert [t["tradeId"] for t in store.list_trades()] == ["t3", "t2", "t1"]
        assert [t["tradeId"] for t in store.list_trades(state="CLOSED")] == ["t2", "t1"]
        assert [t["tradeId"] for t in store.list_trades(underlying="qqq")] == ["t2"]
        assert len(store.list_trades(limit=1)) == 1
        assert len(store.reports()) == 2

    def test_unknown_state_filter(self):
        """Unknown state filters raise ValueError."""
        with pytest.raises(ValueError):
            TradeHistoryStore().list_trades(state="bogus")

    def test_persists_across_restart(self, tmp_path):
        """History reloads from SQLite."""
        db_path = tmp_path / "trades.db"
        TradeHistoryStore(db_path=db_path).save(make_closed_trade())

        reloaded = TradeHistoryStore(db_path=db_path)

        assert reloaded.get("trade-1")["report"]["exitReason"] == "TP"
