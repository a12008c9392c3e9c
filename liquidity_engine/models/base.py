"""SQLAlchemy base configuration and session management."""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from config.settings import get_settings

# Session factory, bound by init_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

# Base class for all models
Base = declarative_base()

_engine: Optional[Engine] = None

def init_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """
    Create the database engine and bind SessionLocal to it.
    Defaults to settings.DATABASE_URL; SQLite URLs get a single shared
    connection so in-memory databases survive across sessions.
    """
    global _engine
    url = url or get_settings().DATABASE_URL
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        kwargs.setdefault("poolclass", StaticPool)
    else:
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)

    _engine = create_engine(url, pool_pre_ping=True, **kwargs)
    SessionLocal.configure(bind=_engine)
    return _engine

def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine

def create_all(engine: Optional[Engine] = None):
    """Create every table known to Base."""
    # Register models on Base.metadata
    from liquidity_engine.models import (  # noqa: F401
        audit_log, operations, partial_sales, pools, positions, snapshots,
    )
    Base.metadata.create_all(bind=engine or get_engine())

def get_db() -> Session:
    """
    Dependency for FastAPI routes.
    Provides database session and ensures cleanup.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
