"""
SQLAlchemy declarative base for SSO service models.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


def utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all SSO service SQLAlchemy models.
    """

    pass
