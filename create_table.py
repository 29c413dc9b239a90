# create_table.py - Create all database tables
# ============================================================================
#
# Usage: python create_table.py

import asyncio

from app.core.database import close_db, init_db


async def main():
    await init_db()
    await close_db()
    print("✅ Tables created")


if __name__ == "__main__":
    asyncio.run(main())
