"""
SQLAlchemy implementation of PoolRepository.

Pools, positions and partial sales live in their own tables; a pool is
loaded and saved as one aggregate inside a single session.
"""
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from liquidity_engine.core.domain import (
    PartialSale, Pool, Position, PositionStatus, PriceRange, ReconciliationState,
    SaleState, ensure_utc, parse_metadata,
)
from liquidity_engine.core.errors import PoolBusy, PoolNotFound
from liquidity_engine.core.repository import PoolRepository
from liquidity_engine.models.base import SessionLocal
from liquidity_engine.models.partial_sales import PartialSaleRecord
from liquidity_engine.models.pools import LiquidityPool
from liquidity_engine.models.positions import PoolPosition
from liquidity_engine.utils.money import to_decimal
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)


def _dec(value):
    return to_decimal(value) if value is not None else None


def _sale_from_row(row: PartialSaleRecord) -> PartialSale:
    price_range = None
    if row.price_range_min is not None and row.price_range_max is not None:
        price_range = PriceRange(to_decimal(row.price_range_min), to_decimal(row.price_range_max))
    return PartialSale(
        sale_id=row.sale_id,
        percentage_of_original=to_decimal(row.percentage_of_original),
        shares_to_sell=to_decimal(row.shares_to_sell),
        entry_price=to_decimal(row.entry_price),
        sell_price=_dec(row.sell_price),
        state=SaleState(row.state),
        price_range=price_range,
        is_complete_sale=bool(row.is_complete_sale),
        created_at=ensure_utc(row.created_at),
        executed_at=ensure_utc(row.executed_at),
        discarded_at=ensure_utc(row.discarded_at),
        discard_reason=row.discard_reason,
    )


def _position_from_row(row: PoolPosition, sales: List[PartialSale]) -> Position:
    return Position(
        position_id=row.position_id,
        symbol=row.symbol,
        entry_price=to_decimal(row.entry_price),
        current_price=to_decimal(row.current_price),
        shares=to_decimal(row.shares),
        original_shares=to_decimal(row.original_shares),
        original_allocated_amount=to_decimal(row.original_allocated_amount),
        original_participation_percentage=to_decimal(row.original_participation_percentage),
        allocated_amount=to_decimal(row.allocated_amount),
        participation_percentage=to_decimal(row.participation_percentage),
        participation_cap=_dec(row.participation_cap),
        unrealized_pl=to_decimal(row.unrealized_pl or 0),
        unrealized_pl_percentage=to_decimal(row.unrealized_pl_percentage or 0),
        realized_pl=to_decimal(row.realized_pl or 0),
        final_return_percentage=_dec(row.final_return_percentage),
        partial_sales=sales,
        status=PositionStatus(row.status),
        close_reason=row.close_reason,
        metadata=parse_metadata(row.position_metadata),
        opened_at=ensure_utc(row.opened_at),
        closed_at=ensure_utc(row.closed_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _write_sale(db: Session, pool_id: str, position_id: str, sale: PartialSale):
    row = db.query(PartialSaleRecord).filter(PartialSaleRecord.sale_id == sale.sale_id).first()
    if row is None:
        row = PartialSaleRecord(sale_id=sale.sale_id, position_id=position_id, pool_id=pool_id)
        db.add(row)
    row.percentage_of_original = sale.percentage_of_original
    row.shares_to_sell = sale.shares_to_sell
    row.entry_price = sale.entry_price
    row.sell_price = sale.sell_price
    row.price_range_min = sale.price_range.min_price if sale.price_range else None
    row.price_range_max = sale.price_range.max_price if sale.price_range else None
    row.is_complete_sale = sale.is_complete_sale
    row.state = sale.state.value
    row.discard_reason = sale.discard_reason
    row.created_at = sale.created_at
    row.executed_at = sale.executed_at
    row.discarded_at = sale.discarded_at


def _write_position(db: Session, pool_id: str, position: Position):
    row = db.query(PoolPosition).filter(PoolPosition.position_id == position.position_id).first()
    if row is None:
        row = PoolPosition(position_id=position.position_id, pool_id=pool_id)
        db.add(row)
    row.symbol = position.symbol
    row.entry_price = position.entry_price
    row.current_price = position.current_price
    row.shares = position.shares
    row.original_shares = position.original_shares
    row.original_allocated_amount = position.original_allocated_amount
    row.original_participation_percentage = position.original_participation_percentage
    row.allocated_amount = position.allocated_amount
    row.participation_percentage = position.participation_percentage
    row.participation_cap = position.participation_cap
    row.unrealized_pl = position.unrealized_pl
    row.unrealized_pl_percentage = position.unrealized_pl_percentage
    row.realized_pl = position.realized_pl
    row.final_return_percentage = position.final_return_percentage
    row.status = position.status.value
    row.close_reason = position.close_reason
    row.position_metadata = position.metadata.model_dump(mode='json') if position.metadata else None
    row.opened_at = position.opened_at
    row.closed_at = position.closed_at
    row.updated_at = position.updated_at
    db.flush()

    for sale in position.partial_sales:
        _write_sale(db, pool_id, position.position_id, sale)


class SqlAlchemyPoolRepository(PoolRepository):
    """
    Relational pool storage.

    ``save_pool`` compares the stored version with the pool's and raises
    PoolBusy when another writer committed in between.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory or SessionLocal

    def _load_positions(self, db: Session, pool_id: str, position_id: Optional[str] = None) -> List[Position]:
        query = db.query(PoolPosition).filter(PoolPosition.pool_id == pool_id)
        sales_query = db.query(PartialSaleRecord).filter(PartialSaleRecord.pool_id == pool_id)
        if position_id is not None:
            query = query.filter(PoolPosition.position_id == position_id)
            sales_query = sales_query.filter(PartialSaleRecord.position_id == position_id)

        sales_by_position = {}
        for row in sales_query.order_by(PartialSaleRecord.id).all():
            sales_by_position.setdefault(row.position_id, []).append(_sale_from_row(row))

        return [
            _position_from_row(row, sales_by_position.get(row.position_id, []))
            for row in query.order_by(PoolPosition.id).all()
        ]

    def load_pool(self, pool_id: str) -> Optional[Pool]:
        db = self.session_factory()
        try:
            row = db.query(LiquidityPool).filter(LiquidityPool.pool_id == pool_id).first()
            if row is None:
                return None
            pool = Pool(
                pool_id=row.pool_id,
                initial_liquidity=to_decimal(row.initial_liquidity),
                distributed_liquidity=to_decimal(row.distributed_liquidity),
                available_liquidity=to_decimal(row.available_liquidity),
                total_liquidity=to_decimal(row.total_liquidity),
                total_profit_loss=to_decimal(row.total_profit_loss),
                total_profit_loss_percentage=to_decimal(row.total_profit_loss_percentage),
                state=ReconciliationState(row.state),
                version=row.version,
                created_at=ensure_utc(row.created_at),
                updated_at=ensure_utc(row.updated_at),
            )
            for position in self._load_positions(db, pool_id):
                pool.positions[position.position_id] = position
            return pool
        finally:
            db.close()

    def save_pool(self, pool: Pool) -> Pool:
        db = self.session_factory()
        try:
            row = (
                db.query(LiquidityPool)
                .filter(LiquidityPool.pool_id == pool.pool_id)
                .with_for_update()
                .first()
            )
            if row is None:
                row = LiquidityPool(pool_id=pool.pool_id, created_at=pool.created_at)
                db.add(row)
            elif row.version != pool.version:
                logger.warning(
                    "Stale pool version",
                    pool_id=pool.pool_id,
                    stored=row.version,
                    attempted=pool.version,
                )
                raise PoolBusy(pool.pool_id)

            row.initial_liquidity = pool.initial_liquidity
            row.distributed_liquidity = pool.distributed_liquidity
            row.available_liquidity = pool.available_liquidity
            row.total_liquidity = pool.total_liquidity
            row.total_profit_loss = pool.total_profit_loss
            row.total_profit_loss_percentage = pool.total_profit_loss_percentage
            row.state = pool.state.value
            row.version = pool.version + 1
            row.updated_at = pool.updated_at
            db.flush()

            for position in pool.positions.values():
                _write_position(db, pool.pool_id, position)

            db.commit()
            pool.version += 1
            return pool
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def load_position(self, pool_id: str, position_id: str) -> Optional[Position]:
        db = self.session_factory()
        try:
            positions = self._load_positions(db, pool_id, position_id)
            return positions[0] if positions else None
        finally:
            db.close()

    def save_position(self, pool_id: str, position: Position) -> Position:
        db = self.session_factory()
        try:
            exists = db.query(LiquidityPool.id).filter(LiquidityPool.pool_id == pool_id).first()
            if exists is None:
                raise PoolNotFound(pool_id)
            _write_position(db, pool_id, position)
            db.commit()
            return position
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_pool_ids(self) -> List[str]:
        db = self.session_factory()
        try:
            return [row.pool_id for row in db.query(LiquidityPool.pool_id).order_by(LiquidityPool.pool_id).all()]
        finally:
            db.close()
