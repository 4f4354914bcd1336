"""Storage layer: PostgreSQL system of record and Redis advisory state."""

from src.storage.database import Database, parse_affected_rows
from src.storage.redis_client import create_redis_client
from src.storage.schema import create_tables

__all__ = ["Database", "create_redis_client", "create_tables", "parse_affected_rows"]
