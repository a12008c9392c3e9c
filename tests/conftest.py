"""Shared fixtures: an in-memory pool engine and a throwaway SQLite database."""

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from liquidity_engine.core.domain import Pool
from liquidity_engine.core.events import InMemoryEventSink, OperatorQueue
from liquidity_engine.core.locks import PoolLock
from liquidity_engine.core.policy import PositionPolicy
from liquidity_engine.core.pool_engine import PoolEngine
from liquidity_engine.core.repository import InMemoryPoolRepository
from liquidity_engine.execution.transaction_ledger import InMemoryTransactionLedger
from liquidity_engine.models.base import create_all

POOL_ID = "TraderCall"
INITIAL_LIQUIDITY = Decimal("10000")

RECONCILIATION_CONFIG = {
    "tolerances": {"money": "0.01", "shares": "0.0001"},
    "duplicate_sales": {"percentage": "0.01", "price": "0.01", "window_seconds": 300},
    "repairs": {
        "backfill_untracked": True,
        "purge_orphans": True,
        "collapse_duplicate_positions": True,
        "collapse_duplicate_sales": True,
        "recalculate_realized_pl": True,
        "enforce_policy": True,
    },
}


@pytest.fixture
def policy() -> PositionPolicy:
    return PositionPolicy()


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def operator_queue() -> OperatorQueue:
    return OperatorQueue()


@pytest.fixture
def repository() -> InMemoryPoolRepository:
    return InMemoryPoolRepository()


@pytest.fixture
def pool_lock() -> PoolLock:
    return PoolLock(POOL_ID, timeout=0.1)


@pytest.fixture
def engine(repository, event_sink, policy, pool_lock, operator_queue) -> PoolEngine:
    return PoolEngine.create(
        POOL_ID,
        INITIAL_LIQUIDITY,
        repository=repository,
        event_sink=event_sink,
        policy=policy,
        lock=pool_lock,
        operator_queue=operator_queue,
    )


@pytest.fixture
def funded_pool() -> Pool:
    return Pool(
        pool_id=POOL_ID,
        initial_liquidity=Decimal("1000"),
        available_liquidity=Decimal("1000"),
    )


@pytest.fixture
def transaction_ledger() -> InMemoryTransactionLedger:
    return InMemoryTransactionLedger()


@pytest.fixture
def sqlite_engine():
    db_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=sqlite_engine)
