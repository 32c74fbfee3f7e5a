from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Declarative base for every ORM model.
    """
    pass


def utcnow() -> datetime:
    """Naive UTC, the convention of every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
