"""Liquidity pool database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer
from sqlalchemy.sql import func
from liquidity_engine.models.base import Base

class LiquidityPool(Base):
    """
    One capital pool (TraderCall, SmartMoney...) and its stored totals.
    """
    __tablename__ = 'liquidity_pools'

    # Primary key
    id = Column(Integer, primary_key=True)
    pool_id = Column(String(32), unique=True, nullable=False, index=True)

    # Liquidity
    initial_liquidity = Column(Numeric(28, 10), nullable=False, default=0)
    distributed_liquidity = Column(Numeric(28, 10), nullable=False, default=0)
    available_liquidity = Column(Numeric(28, 10), nullable=False, default=0)
    total_liquidity = Column(Numeric(28, 10), nullable=False, default=0)

    # Performance
    total_profit_loss = Column(Numeric(28, 10), nullable=False, default=0)
    total_profit_loss_percentage = Column(Numeric(28, 10), nullable=False, default=0)

    # State
    state = Column(String(20), nullable=False, default='consistent')
    version = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
