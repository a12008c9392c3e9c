"""
Pool Accounting Engine

Aggregates the positions of one liquidity pool and keeps the pool identity

    available_liquidity + distributed_liquidity == initial_liquidity + realized P&L

true after every operation.

Mutation flow:
1. Acquire the pool lock (bounded wait, PoolBusy on timeout)
2. Apply the ledger operation to a deep copy of the committed pool
3. Move liquidity between available and distributed
4. Recompute totals and verify the identity
5. Run the position policy
6. Persist, swap the copy in as the committed state, publish events

Any exception before step 6 leaves the committed state untouched.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
import copy
from typing import Dict, List, Optional, Tuple

from liquidity_engine.core import position_ledger as ledger
from liquidity_engine.core.domain import (
    PartialSale, Pool, Position, PositionStatus, PriceRange, utcnow,
)
from liquidity_engine.core.errors import (
    DuplicatePosition, IMBALANCE_DISTRIBUTED, IMBALANCE_LIQUIDITY,
    InvalidOperation, PoolBusy, PoolImbalance, PoolNotFound, PositionNotFound,
    PriceUnavailable,
)
from liquidity_engine.core.events import (
    DomainEvent, EventSink, EventType, InMemoryEventSink, OPERATOR_EVENTS,
    OperatorQueue,
)
from liquidity_engine.core.locks import PoolLock, get_lock_registry
from liquidity_engine.core.policy import PositionPolicy
from liquidity_engine.core.repository import PoolRepository
from liquidity_engine.execution.price_feed import PriceFeed, PriceQuote
from liquidity_engine.utils import metrics
from liquidity_engine.utils.constants import ONE_HUNDRED, ZERO
from liquidity_engine.utils.money import money_close, safe_divide, to_decimal
from liquidity_engine.utils.logging import get_logger
from config.settings import get_settings

logger = get_logger(__name__)


# ========== POOL ARITHMETIC ==========

def release_on_sale(pool: Pool, sale: PartialSale) -> Pool:
    """
    Return an executed sale's capital to the pool.

    The cost basis leaves distributed liquidity; available liquidity gains
    the cost basis plus the realized profit, counted once.
    """
    pool.distributed_liquidity -= sale.cost_basis_released
    pool.available_liquidity += sale.cost_basis_released + sale.realized_profit
    return pool


def release_on_discard(pool: Pool, sale: PartialSale) -> Pool:
    """Exact inverse of ``release_on_sale``."""
    pool.distributed_liquidity += sale.cost_basis_released
    pool.available_liquidity -= sale.cost_basis_released + sale.realized_profit
    return pool


def refresh_totals(pool: Pool) -> Pool:
    """Recompute the derived P&L totals from the positions."""
    pool.total_profit_loss = pool.cumulative_unrealized_pl + pool.cumulative_realized_pl
    pool.total_liquidity = pool.initial_liquidity + pool.total_profit_loss
    pool.total_profit_loss_percentage = safe_divide(
        pool.total_profit_loss * ONE_HUNDRED, pool.initial_liquidity
    )
    return pool


def check_balance(pool: Pool):
    """Raise PoolImbalance if stored liquidity disagrees with the positions."""
    expected = pool.initial_liquidity + pool.cumulative_realized_pl
    actual = pool.available_liquidity + pool.distributed_liquidity
    if not money_close(expected, actual):
        raise PoolImbalance(pool.pool_id, expected, actual, IMBALANCE_LIQUIDITY)

    held = pool.held_cost_basis
    if not money_close(held, pool.distributed_liquidity):
        raise PoolImbalance(pool.pool_id, held, pool.distributed_liquidity, IMBALANCE_DISTRIBUTED)


def rebuild_liquidity(pool: Pool) -> Pool:
    """Derive distributed/available liquidity from the positions alone."""
    pool.distributed_liquidity = pool.held_cost_basis
    pool.available_liquidity = (
        pool.initial_liquidity + pool.cumulative_realized_pl - pool.distributed_liquidity
    )
    return refresh_totals(pool)


def _get_position(pool: Pool, position_id: str) -> Position:
    position = pool.positions.get(position_id)
    if position is None:
        raise PositionNotFound(position_id)
    return position


class PoolEngine:
    """
    Single-writer accounting engine for one pool.

    Reads (``snapshot``, ``get_position``, ``summary``) never take the lock;
    they see the last committed state.
    """

    def __init__(
        self,
        pool: Pool,
        repository: Optional[PoolRepository] = None,
        event_sink: Optional[EventSink] = None,
        policy: Optional[PositionPolicy] = None,
        lock: Optional[PoolLock] = None,
        operator_queue: Optional[OperatorQueue] = None,
    ):
        self._pool = pool
        self.pool_id = pool.pool_id
        self.repository = repository
        self.event_sink = event_sink if event_sink is not None else InMemoryEventSink()
        self.policy = policy if policy is not None else PositionPolicy.from_config()
        self.lock = lock if lock is not None else get_lock_registry().get(pool.pool_id)
        self.operator_queue = operator_queue if operator_queue is not None else OperatorQueue()

    @classmethod
    def create(cls, pool_id: str, initial_liquidity, **kwargs) -> "PoolEngine":
        """Create a new pool funded with ``initial_liquidity``."""
        engine = cls(Pool(pool_id=pool_id), **kwargs)
        engine.set_initial_liquidity(initial_liquidity)
        return engine

    @classmethod
    def load(cls, repository: PoolRepository, pool_id: str, **kwargs) -> "PoolEngine":
        pool = repository.load_pool(pool_id)
        if pool is None:
            raise PoolNotFound(pool_id)
        return cls(pool, repository=repository, **kwargs)

    # ========== TRANSACTIONS ==========

    def make_event(self, event_type: EventType, **payload) -> DomainEvent:
        return DomainEvent(event_type=event_type, pool_id=self.pool_id, payload=payload)

    def report_imbalance(self, error: PoolImbalance):
        """Surface an imbalance to the event sink and the operator queue."""
        metrics.record_pool_imbalance(self.pool_id)
        event = self.make_event(
            EventType.POOL_IMBALANCE_DETECTED,
            measure=error.measure,
            expected=error.expected,
            actual=error.actual,
            difference=error.difference,
        )
        logger.error(
            "Pool imbalance detected",
            pool_id=self.pool_id,
            measure=error.measure,
            expected=str(error.expected),
            actual=str(error.actual),
        )
        self.publish(event)

    def publish(self, event: DomainEvent):
        self.event_sink.publish(event)
        if event.event_type in OPERATOR_EVENTS:
            self.operator_queue.push(event)

    @contextmanager
    def transaction(self, operation: str, verify: bool = True, commit: bool = True):
        """
        Run a mutation on a working copy under the pool lock.

        Yields ``(pool, events)``. With ``commit=False`` the work is checked
        and thrown away (dry run).
        """
        events: List[DomainEvent] = []
        try:
            with self.lock.hold(operation):
                work = copy.deepcopy(self._pool)
                yield work, events

                refresh_totals(work)
                if verify:
                    try:
                        check_balance(work)
                    except PoolImbalance as e:
                        self.report_imbalance(e)
                        raise

                for violation in self.policy.apply(work):
                    metrics.record_policy_correction(self.pool_id, violation.rule)
                    events.append(self.make_event(
                        EventType.POLICY_VIOLATION_CORRECTED, **violation.to_dict()
                    ))

                if not commit:
                    return

                work.updated_at = utcnow()
                if self.repository is not None:
                    self.repository.save_pool(work)
                else:
                    work.version += 1
                self._pool = work
        except PoolBusy:
            metrics.record_pool_busy(self.pool_id)
            logger.warning("Pool busy", pool_id=self.pool_id, operation=operation)
            raise

        metrics.update_pool_liquidity(self.pool_id, work.totals())
        for event in events:
            self.publish(event)

    # ========== READS ==========

    def snapshot(self) -> Pool:
        """Deep copy of the last committed pool state."""
        return copy.deepcopy(self._pool)

    def get_position(self, position_id: str) -> Position:
        return copy.deepcopy(_get_position(self._pool, position_id))

    def positions(self, active_only: bool = False) -> List[Position]:
        pool = self.snapshot()
        if active_only:
            return pool.active_positions()
        return list(pool.positions.values())

    def summary(self) -> dict:
        return self.snapshot().totals()

    def _committed_sale(self, position_id: str, sale_id: str) -> PartialSale:
        return copy.deepcopy(self._pool.positions[position_id].find_sale(sale_id))

    # ========== MUTATIONS ==========

    def set_initial_liquidity(self, amount) -> Pool:
        """Fund the pool. The initial liquidity can only be set once."""
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise InvalidOperation(f"Initial liquidity must be positive, got {amount}")
        with self.transaction("set_initial_liquidity") as (pool, events):
            if pool.initial_liquidity != ZERO:
                raise InvalidOperation(
                    f"Pool {pool.pool_id} initial liquidity is already {pool.initial_liquidity}"
                )
            pool.initial_liquidity = amount
            pool.available_liquidity += amount
        logger.info("Pool funded", pool_id=self.pool_id, initial_liquidity=str(amount))
        return self.snapshot()

    def allocate(
        self,
        position_id: str,
        symbol: str,
        amount,
        entry_price,
        weight,
        metadata=None,
    ) -> Position:
        """Open a position funded from available liquidity."""
        with self.transaction("allocate") as (pool, events):
            if position_id in pool.positions:
                raise InvalidOperation(f"Position id {position_id} already used in {pool.pool_id}")
            existing = pool.active_position_for_symbol(symbol)
            if existing is not None:
                raise DuplicatePosition(pool.pool_id, symbol.upper(), existing.position_id)

            position = ledger.open_position(
                pool, position_id, symbol, amount, entry_price, weight, metadata=metadata
            )
            pool.positions[position_id] = position
            pool.distributed_liquidity += position.allocated_amount
            pool.available_liquidity -= position.allocated_amount
            events.append(self.make_event(
                EventType.POSITION_OPENED,
                position_id=position_id,
                symbol=position.symbol,
                allocated_amount=position.allocated_amount,
                entry_price=position.entry_price,
                shares=position.shares,
                participation_percentage=position.participation_percentage,
            ))

        metrics.record_position_opened(self.pool_id)
        logger.info(
            "Position allocated",
            pool_id=self.pool_id,
            position_id=position_id,
            symbol=symbol.upper(),
            amount=str(amount),
            entry_price=str(entry_price),
            weight=str(weight),
        )
        return self.get_position(position_id)

    def reprice(self, position_id: str, current_price) -> Position:
        with self.transaction("reprice") as (pool, events):
            ledger.reprice(_get_position(pool, position_id), current_price)
        return self.get_position(position_id)

    def reprice_all(self, price_feed: PriceFeed, max_workers: Optional[int] = None) -> dict:
        """
        Mark every active position to market.

        Quotes are fetched concurrently outside the lock; a symbol whose
        lookup fails is skipped for this cycle and keeps its last mark.
        """
        symbols = sorted({p.symbol for p in self.positions(active_only=True)})
        if not symbols:
            return {'updated': [], 'skipped': []}

        quotes: Dict[str, PriceQuote] = {}
        skipped: List[str] = []
        workers = max_workers or get_settings().PRICE_FETCH_WORKERS
        with ThreadPoolExecutor(max_workers=min(workers, len(symbols))) as executor:
            futures = {executor.submit(price_feed.get_current_price, s): s for s in symbols}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    quotes[symbol] = future.result()
                except PriceUnavailable as e:
                    logger.warning("Skipping reprice", pool_id=self.pool_id, symbol=symbol, reason=str(e))
                    skipped.append(symbol)
                except Exception as e:
                    logger.warning(
                        "Price feed error, skipping reprice",
                        pool_id=self.pool_id, symbol=symbol, error=str(e),
                    )
                    skipped.append(symbol)

        updated = []
        with self.transaction("reprice_all") as (pool, events):
            for position in pool.active_positions():
                quote = quotes.get(position.symbol)
                if quote is None:
                    continue
                ledger.reprice(position, quote.price)
                updated.append(position.position_id)

        logger.info(
            "Pool repriced",
            pool_id=self.pool_id,
            updated=len(updated),
            skipped=len(skipped),
        )
        return {'updated': updated, 'skipped': sorted(skipped)}

    def schedule_partial_sale(
        self,
        position_id: str,
        percentage_of_original,
        sell_price=None,
        price_range: Optional[PriceRange] = None,
    ) -> PartialSale:
        with self.transaction("schedule_partial_sale") as (pool, events):
            position = _get_position(pool, position_id)
            sale = ledger.schedule_partial_sale(
                position, percentage_of_original, sell_price=sell_price, price_range=price_range
            )
            events.append(self.make_event(
                EventType.PARTIAL_SALE_SCHEDULED,
                position_id=position_id,
                symbol=position.symbol,
                sale_id=sale.sale_id,
                percentage_of_original=sale.percentage_of_original,
                shares_to_sell=sale.shares_to_sell,
            ))
        metrics.record_partial_sale(self.pool_id, "pending")
        return self._committed_sale(position_id, sale.sale_id)

    def _after_execution(self, pool: Pool, position: Position, sale: PartialSale, events: list):
        release_on_sale(pool, sale)
        events.append(self.make_event(
            EventType.PARTIAL_SALE_EXECUTED,
            position_id=position.position_id,
            symbol=position.symbol,
            sale_id=sale.sale_id,
            shares_to_sell=sale.shares_to_sell,
            sell_price=sale.sell_price,
            liquidity_released=sale.liquidity_released,
            realized_profit=sale.realized_profit,
            accumulated_profit_percentage=ledger.accumulated_profit_percentage(
                position.entry_price, sale.percentage_of_original, sale.sell_price,
                position.partial_sales, candidate_id=sale.sale_id,
            ),
        ))
        if position.status == PositionStatus.CLOSED:
            events.append(self.make_event(
                EventType.POSITION_CLOSED,
                position_id=position.position_id,
                symbol=position.symbol,
                realized_pl=position.realized_pl,
                final_return_percentage=position.final_return_percentage,
                reason=position.close_reason,
            ))

    def _record_execution(self, position_id: str):
        metrics.record_partial_sale(self.pool_id, "executed")
        if not self._pool.positions[position_id].is_active:
            metrics.record_position_closed(self.pool_id, "closed")

    def confirm_partial_sale(self, position_id: str, sale_id: str, sell_price=None) -> PartialSale:
        """Execute a previously scheduled sale."""
        with self.transaction("confirm_partial_sale") as (pool, events):
            position = _get_position(pool, position_id)
            sale = ledger.confirm_partial_sale(position, sale_id, sell_price=sell_price)
            self._after_execution(pool, position, sale, events)
        self._record_execution(position_id)
        return self._committed_sale(position_id, sale_id)

    def execute_partial_sale(self, position_id: str, percentage_of_original, sell_price) -> Tuple[Position, PartialSale]:
        with self.transaction("execute_partial_sale") as (pool, events):
            position = _get_position(pool, position_id)
            _, sale = ledger.execute_partial_sale(position, percentage_of_original, sell_price)
            self._after_execution(pool, position, sale, events)
        self._record_execution(position_id)
        return self.get_position(position_id), self._committed_sale(position_id, sale.sale_id)

    def discard_partial_sale(self, position_id: str, sale_id: str, reason: Optional[str] = None) -> Position:
        """
        Drop a pending sale. Its shares were reserved, not sold, so pool
        liquidity does not move.
        """
        with self.transaction("discard_partial_sale") as (pool, events):
            position = _get_position(pool, position_id)
            ledger.discard_partial_sale(position, sale_id, reason=reason)
            events.append(self.make_event(
                EventType.PARTIAL_SALE_DISCARDED,
                position_id=position_id,
                symbol=position.symbol,
                sale_id=sale_id,
                reason=reason,
            ))
        metrics.record_partial_sale(self.pool_id, "discarded")
        return self.get_position(position_id)

    def close_position(self, position_id: str, exit_price, reason: str = "closed") -> Position:
        """Sell all remaining shares at ``exit_price``."""
        with self.transaction("close_position") as (pool, events):
            position = _get_position(pool, position_id)
            _, final_sale = ledger.close_position(position, exit_price, reason=reason)
            if final_sale is not None:
                self._after_execution(pool, position, final_sale, events)
            else:
                events.append(self.make_event(
                    EventType.POSITION_CLOSED,
                    position_id=position_id,
                    symbol=position.symbol,
                    realized_pl=position.realized_pl,
                    final_return_percentage=position.final_return_percentage,
                    reason=reason,
                ))
        if final_sale is not None:
            metrics.record_partial_sale(self.pool_id, "executed")
        metrics.record_position_closed(self.pool_id, "closed")
        return self.get_position(position_id)

    def rollback_executed_sale(self, position_id: str, sale_id: str, reason: str) -> Position:
        """Undo an executed sale, taking its proceeds back out of available liquidity."""
        with self.transaction("rollback_executed_sale") as (pool, events):
            position = _get_position(pool, position_id)
            sale = ledger.rollback_executed_sale(position, sale_id, reason)
            release_on_discard(pool, sale)
        metrics.record_partial_sale(self.pool_id, "cancelled")
        logger.warning(
            "Executed sale rolled back",
            pool_id=self.pool_id,
            position_id=position_id,
            sale_id=sale_id,
            reason=reason,
        )
        return self.get_position(position_id)

    def refresh(self) -> Pool:
        """Reload the committed state from the repository after PoolBusy."""
        if self.repository is None:
            return self.snapshot()
        with self.lock.hold("refresh"):
            pool = self.repository.load_pool(self.pool_id)
            if pool is None:
                raise PoolNotFound(self.pool_id)
            self._pool = pool
        return self.snapshot()

    def discard_position(self, position_id: str, reason: str) -> Position:
        """Abandon a position; its held cost basis returns to available liquidity."""
        with self.transaction("discard_position") as (pool, events):
            position = _get_position(pool, position_id)
            _, released = ledger.discard_position(position, reason)
            pool.distributed_liquidity -= released
            pool.available_liquidity += released
            events.append(self.make_event(
                EventType.POSITION_DISCARDED,
                position_id=position_id,
                symbol=position.symbol,
                released=released,
                reason=reason,
            ))
        metrics.record_position_closed(self.pool_id, "discarded")
        return self.get_position(position_id)

    def recompute(self) -> dict:
        """
        Recompute totals and verify the pool identity.

        Raises PoolImbalance (after reporting it) if the stored liquidity
        figures drifted; only reconciliation repairs that.
        """
        with self.transaction("recompute") as (pool, events):
            pass
        return self.summary()
