"""SQLite backend.

Test databases live in memory unless test.name is set. In-memory test
databases use a named shared-cache URI so every connection of the alias
(and the clone backups) sees the same data.
"""

import os
import shutil
import sqlite3
import sys
from urllib.parse import parse_qsl

from sqlalchemy import event
from sqlalchemy.engine import URL, Engine

from testkit.db.backends.base import BaseDatabaseWrapper
from testkit.db.creation import BaseDatabaseCreation


class DatabaseCreation(BaseDatabaseCreation):
    """SQLite test database creation."""

    def __init__(self, connection):
        super().__init__(connection)
        # target name -> open sqlite3 connection keeping an in-memory clone alive
        self._memory_clones: dict[str, sqlite3.Connection] = {}

    @staticmethod
    def is_in_memory_db(database_name: str | None) -> bool:
        return (
            not database_name
            or database_name == ":memory:"
            or "mode=memory" in database_name
        )

    def _memory_db_name(self, suffix: str | None = None) -> str:
        name = f"memorydb_{self.connection.alias}"
        if suffix is not None:
            name = f"{name}_{suffix}"
        return f"file:{name}?mode=memory&cache=shared"

    def _get_test_db_name(self) -> str:
        test_database_name = self.connection.settings_dict["test"]["name"] or ":memory:"
        if test_database_name == ":memory:":
            return self._memory_db_name()
        return test_database_name

    def _create_test_db(self, verbosity: int, autoclobber: bool, keepdb: bool = False) -> str:
        test_database_name = self._get_test_db_name()

        if keepdb or not self.connection.settings_dict["test"]["create_db"]:
            return test_database_name
        if not self.is_in_memory_db(test_database_name):
            # Erase the old test database
            if os.access(test_database_name, os.F_OK):
                if verbosity >= 1:
                    self.log(
                        "Destroying old test database for alias "
                        f"{self._get_database_display_str(verbosity, test_database_name)}..."
                    )
                if not autoclobber:
                    confirm = input(
                        "Type 'yes' if you would like to try deleting the test "
                        f"database '{test_database_name}', or 'no' to cancel: "
                    )
                if autoclobber or confirm == "yes":
                    try:
                        os.remove(test_database_name)
                    except Exception as e:
                        self.log(f"Got an error deleting the old test database: {e}")
                        sys.exit(2)
                else:
                    self.log("Tests cancelled.")
                    sys.exit(1)
        return test_database_name

    def get_test_db_clone_settings(self, suffix: str) -> dict:
        orig_settings_dict = self.connection.settings_dict
        source_database_name = orig_settings_dict["name"]

        if not self.is_in_memory_db(source_database_name):
            root, ext = os.path.splitext(source_database_name)
            return {**orig_settings_dict, "name": f"{root}_{suffix}{ext}"}
        if source_database_name and source_database_name.startswith("file:"):
            # Derive from the source so mirrors resolve to their primary's clone
            path, _, query = source_database_name.partition("?")
            return {**orig_settings_dict, "name": f"{path}_{suffix}?{query}"}
        return {**orig_settings_dict, "name": self._memory_db_name(suffix)}

    def _clone_test_db(self, suffix: str, verbosity: int, keepdb: bool = False) -> None:
        source_database_name = self.connection.settings_dict["name"]
        target_database_name = self.get_test_db_clone_settings(suffix)["name"]

        if self.is_in_memory_db(source_database_name):
            source = self.connection.ensure_connection().connection.driver_connection
            target = sqlite3.connect(target_database_name, uri=True, check_same_thread=False)
            source.backup(target)
            self._memory_clones[target_database_name] = target
            return

        if keepdb and os.path.exists(target_database_name):
            return
        if os.access(target_database_name, os.F_OK):
            if verbosity >= 1:
                self.log(
                    "Destroying old test database for alias "
                    f"{self._get_database_display_str(verbosity, target_database_name)}..."
                )
            try:
                os.remove(target_database_name)
            except Exception as e:
                self.log(f"Got an error deleting the old test database: {e}")
                sys.exit(2)
        try:
            shutil.copy(source_database_name, target_database_name)
        except Exception as e:
            self.log(f"Got an error cloning the test database: {e}")
            sys.exit(2)

    def _destroy_test_db(self, test_database_name: str, verbosity: int) -> None:
        clone = self._memory_clones.pop(test_database_name, None)
        if clone is not None:
            clone.close()
        if test_database_name and not self.is_in_memory_db(test_database_name):
            # Remove the SQLite database file
            if os.path.exists(test_database_name):
                os.remove(test_database_name)

    def test_db_signature(self, database_name: str | None = None) -> tuple:
        """
        Return a tuple that uniquely identifies a test database.

        This takes into account the special cases of ":memory:" and "" for
        SQLite since the databases will be distinct despite having the same
        test name.
        """
        test_database_name = database_name or self._get_test_db_name()
        sig = [self.connection.settings_dict["name"]]
        if self.is_in_memory_db(test_database_name):
            sig.append(self.connection.alias)
        else:
            sig.append(test_database_name)
        return tuple(sig)


class DatabaseWrapper(BaseDatabaseWrapper):
    vendor = "sqlite"
    creation_class = DatabaseCreation

    def get_connection_url(self) -> URL:
        name = self.database_name
        if name and name.startswith("file:"):
            path, _, query = name.partition("?")
            return self.url.set(database=path, query={**dict(parse_qsl(query)), "uri": "true"})
        return self.url.set(database=name)

    def get_engine_kwargs(self) -> dict:
        kwargs = super().get_engine_kwargs()
        # Parallel workers share clones across threads
        kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs

    def configure_engine(self, engine: Engine) -> None:
        # pysqlite's own transaction handling breaks SAVEPOINT; take over
        # BEGIN emission so TestCase can nest per-test savepoints.
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")
