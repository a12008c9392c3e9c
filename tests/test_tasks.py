"""Tests for the scheduled task bodies (run without a broker)."""

from decimal import Decimal

import pytest

from liquidity_engine.core.audit import AuditTrail
from liquidity_engine.core.events import InMemoryEventSink
from liquidity_engine.core.locks import PoolLock
from liquidity_engine.core.policy import PositionPolicy
from liquidity_engine.core.pool_registry import PoolRegistry
from liquidity_engine.core.repository import InMemoryPoolRepository
from liquidity_engine.core.snapshots import load_snapshots
from liquidity_engine.execution.price_feed import StaticPriceFeed
from liquidity_engine.execution.transaction_ledger import TransactionSide
from liquidity_engine.scheduler.tasks import run_reconcile, run_reprice, run_snapshots

from conftest import INITIAL_LIQUIDITY, POOL_ID, RECONCILIATION_CONFIG


@pytest.fixture
def registry() -> PoolRegistry:
    registry = PoolRegistry(
        InMemoryPoolRepository(),
        event_sink=InMemoryEventSink(),
        policy=PositionPolicy(),
        audit=AuditTrail(),
        reconciliation_config=RECONCILIATION_CONFIG,
    )
    registry.create_pool(POOL_ID, INITIAL_LIQUIDITY).lock = PoolLock(POOL_ID, timeout=0.1)
    return registry


class TestReprice:
    def test_updates_every_pool(self, registry) -> None:
        registry.engine(POOL_ID).allocate("POS_1", "AAPL", "400", "40", "4")

        results = run_reprice(registry, StaticPriceFeed({"AAPL": "45"}))

        assert results[POOL_ID] == {"updated": ["POS_1"], "skipped": []}
        assert registry.engine(POOL_ID).get_position("POS_1").unrealized_pl == Decimal("50")

    def test_busy_pool_is_deferred(self, registry) -> None:
        engine = registry.engine(POOL_ID)
        engine.allocate("POS_1", "AAPL", "400", "40", "4")
        with engine.lock.hold("other writer"):
            results = run_reprice(registry, StaticPriceFeed({"AAPL": "45"}))
        assert results[POOL_ID] == {"error": "busy"}


class TestReconcile:
    def test_dry_run_by_default(self, registry, transaction_ledger) -> None:
        transaction_ledger.record(POOL_ID, "POS_1", "AAPL", TransactionSide.BUY, "1", "100")

        reports = run_reconcile(registry, transaction_ledger)

        assert reports[POOL_ID]["actions"] == ["would_backfill_position"]
        assert registry.engine(POOL_ID).positions() == []

    def test_apply(self, registry, transaction_ledger) -> None:
        transaction_ledger.record(POOL_ID, "POS_1", "AAPL", TransactionSide.BUY, "1", "100")

        first = run_reconcile(registry, transaction_ledger, dry_run=False)
        second = run_reconcile(registry, transaction_ledger, dry_run=False)

        assert first[POOL_ID]["actions"] == ["backfill_position"]
        assert second[POOL_ID]["consistent"]


class TestSnapshots:
    def test_stores_one_snapshot_per_pool(self, registry, session_factory) -> None:
        registry.create_pool("SwingTrading", "5000").lock = PoolLock("SwingTrading", timeout=0.1)
        db = session_factory()
        try:
            saved = run_snapshots(registry, db)
            stored = load_snapshots(db, POOL_ID)
        finally:
            db.close()

        assert set(saved) == {POOL_ID, "SwingTrading"}
        assert len(stored) == 1
        assert stored[0].total_liquidity == INITIAL_LIQUIDITY
