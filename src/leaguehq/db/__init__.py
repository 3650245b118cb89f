"""Database access: connection pool, table names and status enums."""

from leaguehq.db.pool import close_pool, get_pool

__all__ = ["close_pool", "get_pool"]
