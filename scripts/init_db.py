"""
Database initialization script.
Creates all tables and seeds the configured pools.
"""
import argparse
from decimal import Decimal
from sqlalchemy import text
from liquidity_engine.models.base import create_all, init_engine
from liquidity_engine.core.errors import InvalidOperation
from liquidity_engine.core.pool_registry import get_pool_registry
from config.settings import get_settings

def init_database(initial_liquidity: Decimal, url: str = None):
    """
    Initialize database with all tables.
    Steps:
    1. Create all tables from SQLAlchemy models
    2. Verify tables
    3. Create every pool from POOL_NAMES that does not exist yet
    """
    settings = get_settings()
    engine = init_engine(url)

    print("Liquidity Engine - Database Initialization")
    print("=" * 50)

    # Step 1: Create all tables
    print("\n1. Creating all tables...")
    try:
        create_all(engine)
        print("  ✓ All tables created")
    except Exception as e:
        print(f"  ✗ Error creating tables: {e}")
        return

    # Step 2: Verify
    print("\n2. Verifying tables...")
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    print("  ✓ Database reachable")

    # Step 3: Seed pools
    print("\n3. Seeding pools...")
    registry = get_pool_registry()
    for pool_id in settings.pool_names:
        try:
            registry.create_pool(pool_id, initial_liquidity)
            print(f"  ✓ {pool_id}: ${initial_liquidity}")
        except InvalidOperation:
            print(f"  - {pool_id} already exists")

    print("\n" + "=" * 50)
    print("✅ Database initialization complete!")

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create tables and seed pools")
    parser.add_argument("--initial-liquidity", type=Decimal, default=Decimal("10000"))
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args()
    init_database(args.initial_liquidity, args.database_url)
