# tokenward/db/prune_sessions.py
"""Retention job: deletes refresh sessions that expired long ago. Run from cron, never from a request."""
import argparse
import asyncio
from datetime import timedelta
from typing import Optional

from loguru import logger

from tokenward.core.config import settings
from tokenward.crud.crud_refresh_token import session_store
from tokenward.db.session import dispose_engine, get_session_local


async def prune(retention_days: Optional[int] = None) -> int:
    days = settings.SESSION_RETENTION_DAYS if retention_days is None else retention_days
    SessionLocal = get_session_local()
    async with SessionLocal() as db:
        deleted = await session_store.prune_expired(db, retention=timedelta(days=days))
    logger.info(f"Pruned {deleted} refresh session(s) expired more than {days} day(s) ago")
    return deleted


async def main(retention_days: Optional[int] = None) -> None:
    try:
        await prune(retention_days)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete long-expired refresh sessions.")
    parser.add_argument("--days", type=int, default=None, help="retention in days (default: SESSION_RETENTION_DAYS)")
    args = parser.parse_args()
    asyncio.run(main(args.days))
