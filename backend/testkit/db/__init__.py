"""Database connections and test database creation."""

from testkit.config import DEFAULT_DB_ALIAS
from testkit.db.connection import ConnectionHandler, connections, load_backend

__all__ = [
    "DEFAULT_DB_ALIAS",
    "ConnectionHandler",
    "connections",
    "load_backend",
]
