# tokenward/db/initial_data.py
import argparse
import asyncio
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from tokenward.db.base import Base
from tokenward.db.session import dispose_engine, get_async_engine

# Every model must be imported so Base.metadata knows its table
from tokenward.models import refresh_token, user  # noqa: F401


async def init_db(engine: Optional[AsyncEngine] = None, drop: bool = False) -> None:
    """Creates every table that does not exist yet; ``drop`` recreates them from scratch."""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        if drop:
            logger.warning("Dropping all tables...")
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database schema ready ({', '.join(sorted(Base.metadata.tables))})")


async def main(drop: bool = False) -> None:
    try:
        await init_db(drop=drop)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the tokenward tables.")
    parser.add_argument("--drop", action="store_true", help="drop all tables before creating them")
    args = parser.parse_args()
    try:
        asyncio.run(main(drop=args.drop))
    except Exception:
        logger.exception("Database initialization failed")
        raise SystemExit(1)
