#!/usr/bin/env python3
"""
Database Migration — Create check-in tables from the SQLAlchemy models.

Usage:
    # Local (uses database.url / DATABASE_URL):
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


_TABLE_QUERIES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def list_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text
    result = await conn.execute(text(_TABLE_QUERIES.get(dialect, _TABLE_QUERIES["sqlite"])))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False) -> list[str]:
    """Create missing tables (or only report them). Returns the tables still missing."""
    from config.settings import load_settings
    settings = load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine(settings.database.url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    print(f"Database: {dialect}")
    print(f"URL: {str(engine.url).split('@')[-1]}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    if not check_only:
        print("Running database migration...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        existing = await list_tables(conn, dialect)
    print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

    missing = sorted(defined - set(existing))
    if missing:
        print(f"Tables MISSING: {', '.join(missing)}")
        if check_only:
            print("Run without --check to create them.")
    else:
        print("All tables exist. ✓")

    await close_db()
    return missing


def main():
    parser = argparse.ArgumentParser(description="Check-in database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check))
    sys.exit(1 if missing and not args.check else 0)


if __name__ == "__main__":
    main()
