"""Operation (transaction journal) database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Integer
from sqlalchemy.sql import func
from liquidity_engine.models.base import Base

class Operation(Base):
    """
    Journaled buy/sell executed in the real account.
    Read by reconciliation, never written by the engine.
    """
    __tablename__ = 'operations'

    # Primary key
    id = Column(Integer, primary_key=True)
    operation_id = Column(String(64), unique=True, nullable=False)
    pool_id = Column(String(32), nullable=False, index=True)
    position_ref = Column(String(64), nullable=False, index=True)

    # Operation details
    symbol = Column(String(10), nullable=False)
    side = Column(String(4), nullable=False)
    quantity = Column(Numeric(28, 10), nullable=False)
    price = Column(Numeric(28, 10), nullable=False)
    amount = Column(Numeric(28, 10))

    # Status
    status = Column(String(20), nullable=False, default='ACTIVE', index=True)

    # Timestamps
    executed_at = Column(TIMESTAMP(timezone=True), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
