"""Tests for core.pool_engine (pool-level accounting under the lock)."""

from decimal import Decimal

import pytest

from liquidity_engine.core.errors import (
    DuplicatePosition, IMBALANCE_LIQUIDITY, InsufficientLiquidity,
    InvalidOperation, PolicyViolation, PoolBusy, PoolImbalance, PoolNotFound,
    PositionNotFound,
)
from liquidity_engine.core.events import EventType, InMemoryEventSink
from liquidity_engine.core.locks import PoolLock
from liquidity_engine.core.policy import PositionPolicy
from liquidity_engine.core.pool_engine import PoolEngine
from liquidity_engine.execution.price_feed import StaticPriceFeed

from conftest import INITIAL_LIQUIDITY, POOL_ID


# ── Helpers ──────────────────────────────────────────────────────────


def _allocate(engine: PoolEngine, position_id: str = "POS_1", symbol: str = "AAPL",
              amount: str = "400", entry: str = "40", weight: str = "100"):
    return engine.allocate(position_id, symbol, amount, entry, weight)


def _liquidity(engine: PoolEngine):
    pool = engine.snapshot()
    return pool.available_liquidity, pool.distributed_liquidity


# ── Tests: funding and allocation ────────────────────────────────────


class TestFunding:
    def test_created_pool_is_funded(self, engine: PoolEngine) -> None:
        pool = engine.snapshot()
        assert pool.initial_liquidity == INITIAL_LIQUIDITY
        assert pool.available_liquidity == INITIAL_LIQUIDITY
        assert pool.distributed_liquidity == Decimal("0")
        assert pool.total_liquidity == INITIAL_LIQUIDITY

    def test_initial_liquidity_is_set_once(self, engine: PoolEngine) -> None:
        with pytest.raises(InvalidOperation):
            engine.set_initial_liquidity("500")
        assert engine.snapshot().initial_liquidity == INITIAL_LIQUIDITY

    def test_non_positive_funding_is_rejected(self, repository) -> None:
        with pytest.raises(InvalidOperation):
            PoolEngine.create("Empty", "0", repository=repository, lock=PoolLock("Empty"))


class TestAllocate:
    def test_moves_liquidity(self, engine: PoolEngine, event_sink: InMemoryEventSink) -> None:
        position = _allocate(engine)
        assert position.shares == Decimal("10")
        assert _liquidity(engine) == (Decimal("9600"), Decimal("400"))
        assert len(event_sink.of_type(EventType.POSITION_OPENED)) == 1

    def test_insufficient_liquidity_changes_nothing(self, engine: PoolEngine) -> None:
        before = engine.snapshot()
        with pytest.raises(InsufficientLiquidity):
            _allocate(engine, amount="20000")
        after = engine.snapshot()
        assert after.version == before.version
        assert after.positions == {}
        assert _liquidity(engine) == (INITIAL_LIQUIDITY, Decimal("0"))

    def test_second_active_position_for_symbol_is_rejected(self, engine: PoolEngine) -> None:
        _allocate(engine)
        with pytest.raises(DuplicatePosition) as exc:
            _allocate(engine, position_id="POS_2", symbol="aapl")
        assert exc.value.existing_id == "POS_1"

    def test_reused_position_id_is_rejected(self, engine: PoolEngine) -> None:
        _allocate(engine)
        with pytest.raises(InvalidOperation):
            _allocate(engine, symbol="MSFT")

    def test_symbol_can_be_reopened_after_close(self, engine: PoolEngine) -> None:
        _allocate(engine)
        engine.close_position("POS_1", "40")
        position = _allocate(engine, position_id="POS_2")
        assert position.is_active


# ── Tests: sales ─────────────────────────────────────────────────────


class TestSales:
    def test_executed_sale_returns_cost_and_profit(self, engine: PoolEngine) -> None:
        _allocate(engine)
        position, sale = engine.execute_partial_sale("POS_1", "25", "50")

        assert sale.realized_profit == Decimal("25")
        assert position.shares == Decimal("7.5")
        assert _liquidity(engine) == (Decimal("9725"), Decimal("300"))
        pool = engine.snapshot()
        assert pool.available_liquidity + pool.distributed_liquidity == (
            pool.initial_liquidity + pool.cumulative_realized_pl
        )

    def test_execute_event_carries_weighted_profit(self, engine, event_sink) -> None:
        _allocate(engine)
        engine.execute_partial_sale("POS_1", "25", "50")
        engine.execute_partial_sale("POS_1", "75", "60")

        executed = event_sink.of_type(EventType.PARTIAL_SALE_EXECUTED)
        assert [e.payload["accumulated_profit_percentage"] for e in executed] == [
            Decimal("6.25"), Decimal("43.75"),
        ]
        closed = event_sink.of_type(EventType.POSITION_CLOSED)
        assert closed[0].payload["final_return_percentage"] == Decimal("43.75")

    def test_schedule_and_discard_leave_pool_unchanged(self, engine: PoolEngine) -> None:
        _allocate(engine)
        sale = engine.schedule_partial_sale("POS_1", "25", sell_price="55")
        assert _liquidity(engine) == (Decimal("9600"), Decimal("400"))

        position = engine.discard_partial_sale("POS_1", sale.sale_id, reason="no fill")
        assert position.shares == Decimal("10")
        assert _liquidity(engine) == (Decimal("9600"), Decimal("400"))

    def test_confirm_realizes_at_confirmation(self, engine: PoolEngine) -> None:
        _allocate(engine)
        sale = engine.schedule_partial_sale("POS_1", "25", sell_price="55")
        confirmed = engine.confirm_partial_sale("POS_1", sale.sale_id, sell_price="60")

        assert confirmed.sell_price == Decimal("60")
        assert _liquidity(engine) == (Decimal("9750"), Decimal("300"))

    def test_rollback_restores_liquidity(self, engine: PoolEngine) -> None:
        _allocate(engine)
        _, sale = engine.execute_partial_sale("POS_1", "25", "50")
        engine.rollback_executed_sale("POS_1", sale.sale_id, "booked twice")
        assert _liquidity(engine) == (Decimal("9600"), Decimal("400"))

    def test_sale_leaving_dust_takes_the_remainder(self, engine: PoolEngine) -> None:
        engine.allocate("POS_1", "BTC", "5000", "50000", "50")

        position, sale = engine.execute_partial_sale("POS_1", "99.9", "60000")

        assert sale.shares_to_sell == Decimal("0.1")
        assert sale.percentage_of_original == Decimal("100")
        assert sale.is_complete_sale
        assert not position.is_active
        assert position.allocated_amount == Decimal("0")
        assert position.realized_pl == Decimal("1000")
        assert position.final_return_percentage == Decimal("20")
        assert _liquidity(engine) == (Decimal("11000"), Decimal("0"))

    def test_unknown_position(self, engine: PoolEngine) -> None:
        with pytest.raises(PositionNotFound):
            engine.execute_partial_sale("POS_missing", "25", "50")


class TestClosing:
    def test_close_returns_capital_with_profit(self, engine: PoolEngine) -> None:
        _allocate(engine)
        position = engine.close_position("POS_1", "50", reason="target")
        assert not position.is_active
        assert position.realized_pl == Decimal("100")
        assert _liquidity(engine) == (Decimal("10100"), Decimal("0"))
        assert engine.snapshot().total_liquidity == Decimal("10100")

    def test_discard_returns_cost(self, engine: PoolEngine, event_sink) -> None:
        _allocate(engine)
        engine.execute_partial_sale("POS_1", "25", "50")
        engine.discard_position("POS_1", "abandoned")
        assert _liquidity(engine) == (Decimal("10025"), Decimal("0"))
        assert event_sink.of_type(EventType.POSITION_DISCARDED)[0].payload["released"] == Decimal("300")


# ── Tests: pricing ───────────────────────────────────────────────────


class TestReprice:
    def test_reprice_updates_unrealized_only(self, engine: PoolEngine) -> None:
        _allocate(engine)
        engine.reprice("POS_1", "50")
        pool = engine.snapshot()
        assert pool.cumulative_unrealized_pl == Decimal("100")
        assert pool.total_profit_loss_percentage == Decimal("1")
        assert _liquidity(engine) == (Decimal("9600"), Decimal("400"))

    def test_reprice_all_skips_missing_quotes(self, engine: PoolEngine) -> None:
        _allocate(engine)
        _allocate(engine, position_id="POS_2", symbol="MSFT", amount="300", entry="300")
        feed = StaticPriceFeed({"AAPL": "44"})

        result = engine.reprice_all(feed, max_workers=2)

        assert result == {"updated": ["POS_1"], "skipped": ["MSFT"]}
        assert engine.get_position("POS_1").current_price == Decimal("44")
        assert engine.get_position("POS_2").current_price == Decimal("300")

    def test_loss_on_large_weight_is_corrected(self, engine, event_sink) -> None:
        _allocate(engine, amount="1000", entry="100", weight="10")
        engine.reprice("POS_1", "90")

        assert engine.get_position("POS_1").participation_percentage == Decimal("4.9")
        corrected = event_sink.of_type(EventType.POLICY_VIOLATION_CORRECTED)
        assert corrected[0].payload["corrected_to"] == Decimal("4.9")

    def test_correction_holds_across_reprices(self, engine, event_sink) -> None:
        _allocate(engine, amount="1000", entry="100", weight="10")
        for price in ("90", "89", "88"):
            engine.reprice("POS_1", price)

        assert len(event_sink.of_type(EventType.POLICY_VIOLATION_CORRECTED)) == 1
        position = engine.get_position("POS_1")
        assert position.participation_percentage == Decimal("4.9")
        assert position.participation_cap == Decimal("4.9")

    def test_cap_is_lifted_once_no_longer_losing(self, engine, event_sink) -> None:
        _allocate(engine, amount="1000", entry="100", weight="10")
        engine.reprice("POS_1", "90")

        position = engine.reprice("POS_1", "101")

        assert position.participation_cap is None
        assert position.participation_percentage == Decimal("10")
        assert len(event_sink.of_type(EventType.POLICY_VIOLATION_CORRECTED)) == 1

    def test_rejecting_policy_leaves_state_unchanged(self, repository) -> None:
        engine = PoolEngine.create(
            POOL_ID, INITIAL_LIQUIDITY,
            repository=repository,
            policy=PositionPolicy(raise_on_violation=True),
            lock=PoolLock(POOL_ID, timeout=0.1),
        )
        _allocate(engine, amount="1000", entry="100", weight="10")
        with pytest.raises(PolicyViolation):
            engine.reprice("POS_1", "90")
        assert engine.get_position("POS_1").current_price == Decimal("100")


# ── Tests: concurrency and integrity ─────────────────────────────────


class TestIntegrity:
    def test_busy_pool_rejects_writers(self, engine: PoolEngine, pool_lock: PoolLock) -> None:
        with pool_lock.hold("other writer"):
            with pytest.raises(PoolBusy):
                _allocate(engine)
        assert engine.snapshot().positions == {}

    def test_reads_do_not_wait_for_the_lock(self, engine: PoolEngine, pool_lock: PoolLock) -> None:
        _allocate(engine)
        with pool_lock.hold("other writer"):
            assert engine.get_position("POS_1").shares == Decimal("10")
            assert engine.summary()["available_liquidity"] == Decimal("9600")

    def test_recompute_is_idempotent(self, engine: PoolEngine) -> None:
        _allocate(engine)
        engine.execute_partial_sale("POS_1", "25", "50")
        first = engine.recompute()
        second = engine.recompute()
        first.pop("version")
        second.pop("version")
        assert first == second

    def test_drift_is_reported_not_repaired(self, engine, event_sink, operator_queue) -> None:
        _allocate(engine)
        engine._pool.available_liquidity += Decimal("50")

        with pytest.raises(PoolImbalance) as exc:
            engine.recompute()

        assert exc.value.measure == IMBALANCE_LIQUIDITY
        assert exc.value.difference == Decimal("50")
        assert len(event_sink.of_type(EventType.POOL_IMBALANCE_DETECTED)) == 1
        assert len(operator_queue.pending(POOL_ID)) == 1
        assert engine.snapshot().available_liquidity == Decimal("9650")

    def test_version_increases_per_commit(self, engine: PoolEngine) -> None:
        start = engine.snapshot().version
        _allocate(engine)
        engine.reprice("POS_1", "41")
        assert engine.snapshot().version == start + 2

    def test_stale_writer_gets_busy_and_recovers(self, engine: PoolEngine, repository) -> None:
        other = PoolEngine.load(repository, POOL_ID, lock=PoolLock(POOL_ID, timeout=0.1))
        _allocate(engine)

        with pytest.raises(PoolBusy):
            _allocate(other, position_id="POS_2", symbol="MSFT")

        other.refresh()
        _allocate(other, position_id="POS_2", symbol="MSFT")
        assert _liquidity(other) == (Decimal("9200"), Decimal("800"))

    def test_load_unknown_pool(self, repository) -> None:
        with pytest.raises(PoolNotFound):
            PoolEngine.load(repository, "Nowhere")
