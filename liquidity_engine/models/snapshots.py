"""Pool snapshot database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer
from sqlalchemy.sql import func
from liquidity_engine.models.base import Base

class PoolSnapshot(Base):
    """
    Point-in-time copy of a pool's totals, used for period returns.
    """
    __tablename__ = 'pool_snapshots'

    # Primary key
    id = Column(Integer, primary_key=True)
    pool_id = Column(String(32), nullable=False, index=True)
    taken_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), index=True)

    # Totals
    total_liquidity = Column(Numeric(28, 10), nullable=False)
    available_liquidity = Column(Numeric(28, 10), nullable=False)
    distributed_liquidity = Column(Numeric(28, 10), nullable=False)
    total_profit_loss = Column(Numeric(28, 10), nullable=False)
    total_profit_loss_percentage = Column(Numeric(28, 10), nullable=False)
    active_positions = Column(Integer, nullable=False, default=0)
