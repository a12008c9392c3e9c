"""Audit log database model."""
from sqlalchemy import Column, String, TIMESTAMP, Integer, JSON, Numeric
from sqlalchemy.sql import func
from liquidity_engine.models.base import Base

class AuditLog(Base):
    """
    Immutable audit trail of corrective mutations, hash-chained.
    """
    __tablename__ = 'audit_log'

    # Primary key
    id = Column(Integer, primary_key=True)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), index=True)

    # Event details
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    pool_id = Column(String(32), nullable=False, index=True)

    # Actor and action
    actor = Column(String(50), nullable=False)
    action = Column(String(255), nullable=False)
    reason = Column(String(255))
    amount = Column(Numeric(28, 10))

    # State snapshots
    before_state = Column(JSON)
    after_state = Column(JSON)

    # Cryptographic integrity
    event_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64))
