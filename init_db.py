"""Initialize database schema for the concept taxonomy.

Creates all tables and seeds the fixed category set.
Run this before starting the API server.
"""

import argparse
import asyncio
import sys

from taxonomy.config import settings
from taxonomy.db import AsyncSessionMaker, engine
from taxonomy.models import Base
from taxonomy.seed import seed_categories


async def init_database(reset: bool = False):
    """Create all database tables and seed categories."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")

    async with AsyncSessionMaker() as session:
        async with session.begin():
            inserted = await seed_categories(session)
    print(f"✓ Seeded {len(inserted)} new categories")

    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="Drop all tables first (destroys data)")
    args = parser.parse_args()

    try:
        await init_database(reset=args.reset)
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
