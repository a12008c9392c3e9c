"""
Celery background tasks.

Each task is a thin wrapper around a plain function taking the pool
registry, so the work can run (and be tested) without a broker.
"""
from typing import Optional
from celery import Task
from liquidity_engine.scheduler.celery_app import app
from liquidity_engine.models.base import SessionLocal
from liquidity_engine.core.errors import PoolBusy, PoolImbalance
from liquidity_engine.core.pool_registry import PoolRegistry, get_pool_registry
from liquidity_engine.core.snapshots import save_snapshot, take_snapshot
from liquidity_engine.execution.price_feed import PriceFeed, get_price_feed
from liquidity_engine.execution.transaction_ledger import (
    SqlAlchemyTransactionLedger, TransactionLedger,
)
from liquidity_engine.utils.logging import get_logger
from config.settings import get_settings

logger = get_logger(__name__)


class DatabaseTask(Task):
    """Base task with database session management."""
    _db = None

    @property
    def db(self):
        if self._db is None:
            get_pool_registry()
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


def run_reprice(registry: PoolRegistry, price_feed: PriceFeed) -> dict:
    """Mark every pool to market; a busy or imbalanced pool is skipped."""
    results = {}
    for engine in registry.engines():
        try:
            results[engine.pool_id] = engine.reprice_all(price_feed)
        except PoolBusy:
            logger.warning("Pool busy, reprice deferred", pool_id=engine.pool_id)
            results[engine.pool_id] = {'error': 'busy'}
        except PoolImbalance as e:
            logger.error("Pool imbalanced, reprice skipped", pool_id=engine.pool_id, error=str(e))
            results[engine.pool_id] = {'error': 'imbalanced'}
    return results


def run_reconcile(registry: PoolRegistry, ledger: TransactionLedger, dry_run: bool = True) -> dict:
    """Reconcile every pool; returns the reports keyed by pool."""
    reports = {}
    for pool_id in registry.pool_ids():
        try:
            report = registry.reconciliation(pool_id).reconcile(ledger, dry_run=dry_run)
        except PoolBusy:
            logger.warning("Pool busy, reconciliation deferred", pool_id=pool_id)
            reports[pool_id] = {'error': 'busy'}
            continue
        if not dry_run:
            registry.operator_queue.acknowledge(pool_id, until=report.started_at)
        reports[pool_id] = {
            'dry_run': dry_run,
            'findings': len(report.findings),
            'actions': [a.name for a in report.actions],
            'consistent': report.is_consistent,
        }
    return reports


def run_snapshots(registry: PoolRegistry, db) -> dict:
    """Store one snapshot per pool in the given session."""
    saved = {}
    for engine in registry.engines():
        snapshot = take_snapshot(engine.snapshot())
        save_snapshot(db, snapshot)
        saved[engine.pool_id] = str(snapshot.total_liquidity)
    db.commit()
    return saved


@app.task(base=DatabaseTask, bind=True)
def reprice_pools(self, feed_name: Optional[str] = None):
    """
    Every 5 minutes: update current prices of all active positions.
    """
    logger.info("Starting pool repricing")
    feed = get_price_feed(feed_name or get_settings().PRICE_FEED)
    try:
        return run_reprice(get_pool_registry(), feed)
    except Exception as e:
        logger.error("Pool repricing failed", error=str(e))
        raise


@app.task(base=DatabaseTask, bind=True)
def reconcile_pools(self, dry_run: bool = True):
    """
    Hourly: reconcile pools against the operations journal.
    """
    logger.info("Starting pool reconciliation", dry_run=dry_run)
    try:
        return run_reconcile(get_pool_registry(), SqlAlchemyTransactionLedger(SessionLocal), dry_run=dry_run)
    except Exception as e:
        logger.error("Pool reconciliation failed", error=str(e))
        raise


@app.task(base=DatabaseTask, bind=True)
def save_pool_snapshots(self):
    """
    Daily after market close: snapshot pool totals.
    """
    logger.info("Saving pool snapshots")
    db = self.db
    try:
        return run_snapshots(get_pool_registry(), db)
    except Exception as e:
        db.rollback()
        logger.error("Snapshot save failed", error=str(e))
        raise
