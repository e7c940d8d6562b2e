"""Per-alias database connections.

The handler keeps one settings dict per alias, shared by all threads, and
one DatabaseWrapper per alias per thread. Parallel test workers rely on
the latter to point their own wrappers at their database clones.
"""

import importlib
import logging
import threading

from sqlalchemy.engine import make_url

from dispatch import receiver
from dispatch.signals import setting_changed
from testkit.config import DEFAULT_DB_ALIAS, DatabaseSettings, TestDatabaseSettings, get_settings
from testkit.exceptions import ConnectionDoesNotExist, ImproperlyConfigured

logger = logging.getLogger(__name__)

# SQLAlchemy backend name -> testkit backend module
BACKENDS = {
    "sqlite": "testkit.db.backends.sqlite",
    "postgresql": "testkit.db.backends.postgresql",
}


def load_backend(url: str) -> type:
    """Return the DatabaseWrapper class for a SQLAlchemy URL.

    Raises:
        ImproperlyConfigured: If the URL's backend is not supported.
    """
    backend_name = make_url(url).get_backend_name()
    module_path = BACKENDS.get(backend_name)
    if module_path is None:
        available = ", ".join(sorted(BACKENDS))
        raise ImproperlyConfigured(
            f"'{backend_name}' isn't an available database backend. Available: {available}"
        )
    return importlib.import_module(module_path).DatabaseWrapper


class ConnectionHandler:
    """Registry of database connections, keyed by alias."""

    def __init__(self, settings: dict[str, dict] | None = None):
        self._settings = self.configure_settings(settings) if settings is not None else None
        self._local = threading.local()

    @staticmethod
    def configure_settings(databases: dict) -> dict[str, dict]:
        """Normalize alias settings into mutable dicts with every key present."""
        test_defaults = TestDatabaseSettings().model_dump()
        configured = {}
        for alias, conn in databases.items():
            if isinstance(conn, DatabaseSettings):
                conn = conn.model_dump()
            else:
                conn = dict(conn)
            if "url" not in conn:
                raise ImproperlyConfigured(f"Database '{alias}' has no url")
            conn.setdefault("echo", False)
            test = conn.get("test") or {}
            conn["test"] = {**test_defaults, **test}
            conn.setdefault("name", make_url(conn["url"]).database)
            configured[alias] = conn
        if configured and DEFAULT_DB_ALIAS not in configured:
            raise ImproperlyConfigured(f"You must define a '{DEFAULT_DB_ALIAS}' database.")
        return configured

    @property
    def settings(self) -> dict[str, dict]:
        if self._settings is None:
            self._settings = self.configure_settings(get_settings().database_settings_dicts())
        return self._settings

    @property
    def _connections(self) -> dict:
        conns = getattr(self._local, "connections", None)
        if conns is None:
            conns = self._local.connections = {}
        return conns

    def configure(self, databases: dict) -> None:
        """Replace the configured databases (closes this thread's connections)."""
        self.close_all()
        self._settings = self.configure_settings(databases)
        self._local = threading.local()

    def reset(self) -> None:
        """Drop cached settings and connections; settings are re-read lazily."""
        self.close_all()
        self._settings = None
        self._local = threading.local()

    def create_connection(self, alias: str):
        if alias not in self.settings:
            raise ConnectionDoesNotExist(f"The connection '{alias}' doesn't exist.")
        db = self.settings[alias]
        backend = load_backend(db["url"])
        return backend(db, alias)

    def __getitem__(self, alias: str):
        conns = self._connections
        try:
            return conns[alias]
        except KeyError:
            conn = conns[alias] = self.create_connection(alias)
            return conn

    def __setitem__(self, alias: str, value) -> None:
        self._connections[alias] = value

    def __delitem__(self, alias: str) -> None:
        del self._connections[alias]

    def __iter__(self):
        return iter(self.settings)

    def __contains__(self, alias: str) -> bool:
        return alias in self.settings

    def __len__(self) -> int:
        return len(self.settings)

    def all(self, initialized_only: bool = False) -> list:
        return [
            self[alias]
            for alias in self
            # If initialized_only is True, return only initialized connections.
            if not initialized_only or alias in self._connections
        ]

    def close_all(self) -> None:
        for conn in list(self._connections.values()):
            conn.close()


connections = ConnectionHandler()


@receiver(setting_changed, dispatch_uid="testkit.db.reset_connections")
def reset_connections(*, setting: str, **kwargs) -> None:
    if setting == "databases":
        logger.debug("databases setting changed, resetting connections")
        connections.reset()
