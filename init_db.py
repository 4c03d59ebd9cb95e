"""
Raffle Indexer — init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Seeds the sync cursor at INDEXING_START_HEIGHT - 1 if none exists
- Optionally resets the cursor (operator intervention)
"""

import argparse
import asyncio
import os
from typing import Optional

from config import settings  # keeps DB path consistent with app
from db import ProjectionStore


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


# =========================================================
# Main
# =========================================================
async def main(db_path: str = DB_PATH, start_height: int = settings.INDEXING_START_HEIGHT,
               reset_to: Optional[int] = None) -> int:
    print(f"Using DB_PATH={db_path}")
    store = await ProjectionStore.open(db_path)
    try:
        if reset_to is not None:
            await store.reset_cursor(reset_to)
            print(f"Sync cursor reset to {reset_to}")
            return reset_to

        existing = await store.get_cursor()
        cursor = await store.init_cursor(start_height)
        if existing is None:
            print(f"Initialized sync cursor at {cursor}")
        else:
            print(f"Sync cursor exists: {cursor}")
        return cursor
    finally:
        await store.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize the raffle indexer database")
    parser.add_argument("--db", default=DB_PATH)
    parser.add_argument("--start-height", type=int, default=settings.INDEXING_START_HEIGHT)
    parser.add_argument("--reset-cursor", type=int, default=None, metavar="HEIGHT",
                        help="move the sync cursor to HEIGHT (next poll starts at HEIGHT + 1)")
    args = parser.parse_args()
    asyncio.run(main(args.db, args.start_height, args.reset_cursor))
