"""Pool position database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer, JSON, ForeignKey
from sqlalchemy.sql import func
from liquidity_engine.models.base import Base

class PoolPosition(Base):
    """
    Capital a pool has allocated to one symbol (open, closed or discarded).
    """
    __tablename__ = 'pool_positions'

    # Primary key
    id = Column(Integer, primary_key=True)
    position_id = Column(String(64), unique=True, nullable=False, index=True)
    pool_id = Column(String(32), ForeignKey('liquidity_pools.pool_id'), nullable=False, index=True)
    symbol = Column(String(10), nullable=False, index=True)

    # Entry details
    entry_price = Column(Numeric(28, 10), nullable=False)
    current_price = Column(Numeric(28, 10), nullable=False)
    shares = Column(Numeric(28, 10), nullable=False)
    original_shares = Column(Numeric(28, 10), nullable=False)

    # Allocation
    original_allocated_amount = Column(Numeric(28, 10), nullable=False)
    original_participation_percentage = Column(Numeric(28, 10), nullable=False)
    allocated_amount = Column(Numeric(28, 10), nullable=False)
    participation_percentage = Column(Numeric(28, 10), nullable=False)
    participation_cap = Column(Numeric(28, 10))

    # Performance
    unrealized_pl = Column(Numeric(28, 10), default=0)
    unrealized_pl_percentage = Column(Numeric(28, 10), default=0)
    realized_pl = Column(Numeric(28, 10), default=0)
    final_return_percentage = Column(Numeric(28, 10))

    # State
    status = Column(String(20), default='active', index=True)
    close_reason = Column(String(255))
    position_metadata = Column('metadata', JSON)

    # Timestamps
    opened_at = Column(TIMESTAMP(timezone=True), nullable=False)
    closed_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
