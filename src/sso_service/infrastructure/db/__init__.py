"""Database package"""

from sso_service.infrastructure.db.database import Database, get_db, normalize_database_url

__all__ = ["Database", "get_db", "normalize_database_url"]
