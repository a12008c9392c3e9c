"""Partial sale database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer, Boolean, ForeignKey
from liquidity_engine.models.base import Base

class PartialSaleRecord(Base):
    """
    Planned or executed liquidation of part of a pool position.
    """
    __tablename__ = 'partial_sales'

    # Primary key
    id = Column(Integer, primary_key=True)
    sale_id = Column(String(64), unique=True, nullable=False, index=True)
    position_id = Column(String(64), ForeignKey('pool_positions.position_id'), nullable=False, index=True)
    pool_id = Column(String(32), nullable=False, index=True)

    # Sale details
    percentage_of_original = Column(Numeric(28, 10), nullable=False)
    shares_to_sell = Column(Numeric(28, 10), nullable=False)
    entry_price = Column(Numeric(28, 10), nullable=False)
    sell_price = Column(Numeric(28, 10))
    price_range_min = Column(Numeric(28, 10))
    price_range_max = Column(Numeric(28, 10))
    is_complete_sale = Column(Boolean, default=False)

    # State
    state = Column(String(20), nullable=False, default='pending', index=True)
    discard_reason = Column(String(255))

    # Timestamps
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    executed_at = Column(TIMESTAMP(timezone=True))
    discarded_at = Column(TIMESTAMP(timezone=True))
