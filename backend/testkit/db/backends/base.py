"""Database wrapper shared by all backends."""

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine, make_url

from dispatch.signals import connection_created
from testkit.db.creation import BaseDatabaseCreation
from testkit.exceptions import DatabaseOperationForbidden

logger = logging.getLogger(__name__)


class BaseDatabaseWrapper:
    """Connection manager for one database alias.

    Holds a SQLAlchemy engine and a single persistent connection. The
    engine is rebuilt whenever the database name changes (e.g. when the
    alias is switched over to its test database).

    settings_dict is shared with the ConnectionHandler, so renaming the
    database here is visible to wrappers created later in other threads.
    """

    vendor = "unknown"
    creation_class = BaseDatabaseCreation

    def __init__(self, settings_dict: dict, alias: str):
        self.settings_dict = settings_dict
        self.alias = alias
        self.connection: Connection | None = None
        self.debug_sql = False
        self.creation = self.creation_class(self)
        # Snapshot taken by create_test_db(serialize=True)
        self._test_serialized_contents: str | None = None
        self._engine: Engine | None = None
        self._forbidden_reason: str | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} vendor={self.vendor!r} alias={self.alias!r}>"

    @property
    def database_name(self) -> str | None:
        return self.settings_dict["name"]

    @property
    def url(self) -> URL:
        return make_url(self.settings_dict["url"])

    def get_connection_url(self) -> URL:
        """URL of the database currently selected by settings_dict['name']."""
        return self.url.set(database=self.database_name)

    def get_engine_kwargs(self) -> dict:
        return {"echo": bool(self.settings_dict.get("echo") or self.debug_sql)}

    def configure_engine(self, engine: Engine) -> None:
        """Hook for backends to attach engine event listeners."""

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.get_connection_url(), **self.get_engine_kwargs())
            self.configure_engine(self._engine)
        return self._engine

    def ensure_connection(self) -> Connection:
        """Return the open connection, connecting first if needed.

        Raises:
            DatabaseOperationForbidden: If access is currently forbidden.
        """
        if self._forbidden_reason is not None:
            raise DatabaseOperationForbidden(self._forbidden_reason)
        if self.connection is None or self.connection.closed:
            self.connection = self.engine.connect()
            logger.debug("Connected alias '%s' to %s", self.alias, self.display_name)
            connection_created.send(sender=self.__class__, connection=self)
        return self.connection

    def execute(self, statement, parameters: dict | None = None):
        """Execute a statement (SQL string or SQLAlchemy construct)."""
        if isinstance(statement, str):
            statement = text(statement)
        return self.ensure_connection().execute(statement, parameters or {})

    def close(self) -> None:
        """Close the connection and dispose of the engine."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def set_debug_sql(self, enabled: bool) -> None:
        self.debug_sql = enabled
        if self._engine is not None:
            self._engine.echo = enabled or bool(self.settings_dict.get("echo"))

    def forbid(self, reason: str) -> None:
        self._forbidden_reason = reason

    def allow(self) -> None:
        self._forbidden_reason = None

    @property
    def display_name(self) -> str:
        return self.get_connection_url().render_as_string(hide_password=True)
