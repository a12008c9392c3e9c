"""Tests for pool snapshots and period returns."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from liquidity_engine.core.domain import Pool
from liquidity_engine.core.snapshots import (
    PERIODS, SnapshotData, load_snapshots, period_returns, return_percentage,
    save_snapshot, take_snapshot,
)

from conftest import POOL_ID

NOW = datetime(2024, 6, 1, 21, 30, tzinfo=timezone.utc)


def _snapshot(days_ago: int, pct: str) -> SnapshotData:
    return take_snapshot(
        Pool(pool_id=POOL_ID, total_profit_loss_percentage=Decimal(pct)),
        taken_at=NOW - timedelta(days=days_ago),
    )


class TestReturnPercentage:
    def test_growth(self) -> None:
        assert return_percentage("110", "100") == Decimal("10")

    def test_no_history(self) -> None:
        assert return_percentage("110", "0") == Decimal("0")


class TestPeriodReturns:
    def test_fallbacks(self) -> None:
        current = Pool(pool_id=POOL_ID, total_profit_loss_percentage=Decimal("5"))
        snapshots = [_snapshot(7, "3"), _snapshot(40, "1")]

        returns = period_returns(current, snapshots, now=NOW)

        assert set(returns) == set(PERIODS)
        assert returns["1d"] == Decimal("2.00")
        assert returns["7d"] == Decimal("2.00")
        assert returns["15d"] == Decimal("4.00")
        assert returns["30d"] == Decimal("4.00")
        assert returns["365d"] == Decimal("4.00")

    def test_exact_day_match(self) -> None:
        current = Pool(pool_id=POOL_ID, total_profit_loss_percentage=Decimal("5"))
        snapshots = [_snapshot(1, "4.5"), _snapshot(7, "3"), _snapshot(40, "1")]
        assert period_returns(current, snapshots, now=NOW)["1d"] == Decimal("0.50")

    def test_without_snapshots(self) -> None:
        current = Pool(pool_id=POOL_ID)
        assert period_returns(current, [], now=NOW) == {key: None for key in PERIODS}


class TestPersistence:
    def test_save_and_load(self, session_factory) -> None:
        db = session_factory()
        try:
            save_snapshot(db, _snapshot(3, "2.5"))
            save_snapshot(db, _snapshot(1, "3.5"))
            db.commit()

            loaded = load_snapshots(db, POOL_ID)
            recent = load_snapshots(db, POOL_ID, since=NOW - timedelta(days=2))
        finally:
            db.close()

        assert [s.total_profit_loss_percentage for s in loaded] == [Decimal("2.5"), Decimal("3.5")]
        assert loaded[0].taken_at == NOW - timedelta(days=3)
        assert len(recent) == 1
