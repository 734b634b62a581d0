#!/usr/bin/env python3
"""
Database Migration — Create the cadence engine tables from the SQLAlchemy models.

Usage:
    # Local:
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


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    # Database-specific table listing
    if dialect == "postgresql":
        query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    elif dialect == "mysql":
        query = "SHOW TABLES"
    else:  # sqlite
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    result = await conn.execute(text(query))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False):
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    settings = load_settings()

    from database.session import close_db, get_engine
    from database.models import Base

    engine = get_engine(settings.database.url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    if check_only:
        url = str(engine.url)
        print(f"Database: {dialect}")
        print(f"URL: {url.split('@')[-1] if '@' in url else url}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Verify
    async with engine.connect() as conn:
        tables = [t for t in await _existing_tables(conn, dialect) if t in defined]
    print(f"Tables created/verified: {', '.join(sorted(tables))}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
