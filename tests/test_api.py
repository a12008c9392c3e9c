"""API tests through FastAPI's TestClient with an in-memory registry."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from liquidity_engine.api.main import app
from liquidity_engine.api.routes.pools import get_transaction_ledger
from liquidity_engine.core.audit import AuditTrail
from liquidity_engine.core.events import InMemoryEventSink
from liquidity_engine.core.locks import PoolLock
from liquidity_engine.core.policy import PositionPolicy
from liquidity_engine.core.pool_registry import PoolRegistry, get_pool_registry
from liquidity_engine.core.repository import InMemoryPoolRepository
from liquidity_engine.execution.transaction_ledger import TransactionSide
from liquidity_engine.models.base import get_db

from conftest import INITIAL_LIQUIDITY, POOL_ID, RECONCILIATION_CONFIG


def _dec(value) -> Decimal:
    return Decimal(str(value))


@pytest.fixture
def registry() -> PoolRegistry:
    registry = PoolRegistry(
        InMemoryPoolRepository(),
        event_sink=InMemoryEventSink(),
        policy=PositionPolicy(),
        audit=AuditTrail(),
        reconciliation_config=RECONCILIATION_CONFIG,
    )
    engine = registry.create_pool(POOL_ID, INITIAL_LIQUIDITY)
    engine.lock = PoolLock(POOL_ID, timeout=0.1)
    return registry


@pytest.fixture
def client(registry, transaction_ledger, session_factory):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_pool_registry] = lambda: registry
    app.dependency_overrides[get_transaction_ledger] = lambda: transaction_ledger
    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPoolReads:
    def test_list_pools(self, client) -> None:
        response = client.get("/pools/")
        assert response.status_code == 200
        body = response.json()
        assert [p["pool_id"] for p in body] == [POOL_ID]
        assert _dec(body[0]["available_liquidity"]) == INITIAL_LIQUIDITY

    def test_unknown_pool(self, client) -> None:
        assert client.get("/pools/Nowhere").status_code == 404
        assert client.get("/pools/Nowhere/positions").status_code == 404

    def test_positions_with_filters(self, client, registry) -> None:
        engine = registry.engine(POOL_ID)
        engine.allocate("POS_1", "AAPL", "400", "40", "4")
        engine.allocate("POS_2", "MSFT", "300", "300", "3")
        engine.close_position("POS_2", "310")

        active = client.get(f"/pools/{POOL_ID}/positions", params={"status": "active"}).json()
        msft = client.get(f"/pools/{POOL_ID}/positions", params={"symbol": "msft"}).json()

        assert [p["position_id"] for p in active] == ["POS_1"]
        assert [p["status"] for p in msft] == ["closed"]
        assert _dec(msft[0]["realized_pl"]) == Decimal("10")

    def test_single_position(self, client, registry) -> None:
        registry.engine(POOL_ID).allocate("POS_1", "AAPL", "400", "40", "4")
        registry.engine(POOL_ID).execute_partial_sale("POS_1", "25", "50")

        body = client.get(f"/pools/{POOL_ID}/positions/POS_1").json()

        assert _dec(body["shares"]) == Decimal("7.5")
        assert body["partial_sales"][0]["state"] == "executed"
        assert client.get(f"/pools/{POOL_ID}/positions/POS_missing").status_code == 404

    def test_returns_without_history(self, client) -> None:
        body = client.get(f"/pools/{POOL_ID}/returns").json()
        assert body["pool_id"] == POOL_ID
        assert body["returns"]["7d"] is None


class TestReconcileEndpoint:
    def test_defaults_to_dry_run(self, client, registry, transaction_ledger) -> None:
        transaction_ledger.record(POOL_ID, "POS_1", "AAPL", TransactionSide.BUY, "1", "100")

        body = client.post(f"/pools/{POOL_ID}/reconcile", json={}).json()

        assert body["dry_run"] is True
        assert [a["action"] for a in body["actions"]] == ["would_backfill_position"]
        assert registry.engine(POOL_ID).positions() == []

    def test_apply(self, client, registry, transaction_ledger) -> None:
        transaction_ledger.record(POOL_ID, "POS_1", "AAPL", TransactionSide.BUY, "1", "100")

        body = client.post(f"/pools/{POOL_ID}/reconcile", json={"dry_run": False}).json()

        assert [a["action"] for a in body["actions"]] == ["backfill_position"]
        assert registry.engine(POOL_ID).get_position("POS_1").shares == Decimal("1")

    def test_apply_acknowledges_earlier_operator_items(self, client, registry) -> None:
        engine = registry.engine(POOL_ID)
        engine.allocate("POS_1", "AAPL", "400", "40", "4")
        registry.reconciliation(POOL_ID).scan_for_orphans([])
        assert len(client.get(f"/pools/{POOL_ID}/operator-queue").json()) == 1

        client.post(f"/pools/{POOL_ID}/reconcile", json={"dry_run": False, "live_refs": ["POS_1"]})

        queue = client.get(f"/pools/{POOL_ID}/operator-queue").json()
        assert [item["event_type"] for item in queue] == ["OrphanDetected"]

    def test_busy_pool(self, client, registry) -> None:
        with registry.engine(POOL_ID).lock.hold("other writer"):
            response = client.post(f"/pools/{POOL_ID}/reconcile", json={"dry_run": False})
        assert response.status_code == 409

    def test_unknown_pool(self, client) -> None:
        assert client.post("/pools/Nowhere/reconcile", json={}).status_code == 404


class TestHealth:
    def test_pools_health(self, client, registry) -> None:
        body = client.get("/health/pools").json()
        assert body["status"] == "healthy"
        assert body["pools"][POOL_ID]["state"] == "consistent"

    def test_root(self, client) -> None:
        assert client.get("/").json()["name"] == "Liquidity Engine API"
