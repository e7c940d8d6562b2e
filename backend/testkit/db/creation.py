"""Test database creation shared by all backends.

Backends override the underscore hooks (_create_test_db, _destroy_test_db,
_clone_test_db); the public methods handle naming, logging, settings
switch-over and the lifecycle signals.
"""

import json
import logging
import os
import sys
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from pkgutil import resolve_name

from sqlalchemy import MetaData, select

from dispatch.signals import test_database_created, test_database_destroyed
from testkit.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

# The prefix to put on the default database name when creating
# the test database.
TEST_DATABASE_PREFIX = "test_"


def _json_default(value):
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _coerce_value(column, value):
    """Turn a JSON-decoded value back into the column's Python type."""
    if value is None or not isinstance(value, str):
        return value
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if python_type is datetime:
        return datetime.fromisoformat(value)
    if python_type is date:
        return date.fromisoformat(value)
    if python_type is time:
        return time.fromisoformat(value)
    if python_type is Decimal:
        return Decimal(value)
    if python_type is bytes:
        return bytes.fromhex(value)
    if python_type is uuid.UUID:
        return uuid.UUID(value)
    return value


class BaseDatabaseCreation:
    """Create, clone and destroy the test database for one alias."""

    def __init__(self, connection):
        self.connection = connection

    def log(self, msg: str) -> None:
        sys.stderr.write(msg + os.linesep)

    def _get_database_display_str(self, verbosity: int, database_name: str) -> str:
        """Return display string for a database for use in various actions."""
        suffix = f" ('{database_name}')" if verbosity >= 2 else ""
        return f"'{self.connection.alias}'{suffix}"

    def _get_test_db_name(self) -> str:
        """Internal implementation - return the name of the test DB that will be
        created. Only useful when called from create_test_db() and
        _create_test_db() and when no external munging is done with the 'name'
        settings.
        """
        test_name = self.connection.settings_dict["test"]["name"]
        if test_name:
            return test_name
        if not self.connection.settings_dict["name"]:
            raise ImproperlyConfigured(
                f"Database '{self.connection.alias}' has no database name in its url."
            )
        return TEST_DATABASE_PREFIX + self.connection.settings_dict["name"]

    def create_test_db(
        self,
        verbosity: int = 1,
        autoclobber: bool = False,
        serialize: bool = True,
        keepdb: bool = False,
    ) -> str:
        """Create a test database and switch the alias over to it.

        Args:
            verbosity: 0 = silent, 1 = progress, 2 = include database names.
            autoclobber: Destroy a pre-existing test database without asking.
            serialize: Snapshot the initial contents for serialized_rollback.
            keepdb: Reuse an existing test database instead of recreating it.

        Returns:
            The name of the test database.
        """
        test_database_name = self._get_test_db_name()

        if verbosity >= 1:
            action = "Using existing" if keepdb else "Creating"
            self.log(
                f"{action} test database for alias "
                f"{self._get_database_display_str(verbosity, test_database_name)}..."
            )

        # Backends may rewrite the name (e.g. SQLite in-memory URIs)
        test_database_name = self._create_test_db(verbosity, autoclobber, keepdb)

        self.connection.close()
        self.connection.settings_dict["name"] = test_database_name

        # Connect for the side effect of initializing the test database
        # (and keeping in-memory databases alive).
        self.connection.ensure_connection()
        self.create_schema()

        if serialize:
            self.connection._test_serialized_contents = self.serialize_db_to_string()

        logger.debug("Test database ready for alias '%s': %s", self.connection.alias, test_database_name)
        test_database_created.send(
            sender=type(self),
            alias=self.connection.alias,
            test_database_name=test_database_name,
            keepdb=keepdb,
        )
        return test_database_name

    def _create_test_db(self, verbosity: int, autoclobber: bool, keepdb: bool = False) -> str:
        """Internal implementation - create the test db tables."""
        test_database_name = self._get_test_db_name()
        if not self.connection.settings_dict["test"]["create_db"]:
            return test_database_name

        try:
            self._execute_create_test_db(test_database_name, keepdb)
        except ImproperlyConfigured:
            raise
        except Exception as e:
            # Keeping the db means an existing one is fine as it is
            if keepdb:
                return test_database_name

            self.log(f"Got an error creating the test database: {e}")
            if not autoclobber:
                confirm = input(
                    "Type 'yes' if you would like to try deleting the test "
                    f"database '{test_database_name}', or 'no' to cancel: "
                )
            if autoclobber or confirm == "yes":
                try:
                    if verbosity >= 1:
                        self.log(
                            "Destroying old test database for alias "
                            f"{self._get_database_display_str(verbosity, test_database_name)}..."
                        )
                    self._destroy_test_db(test_database_name, verbosity)
                    self._execute_create_test_db(test_database_name, keepdb)
                except Exception as e:
                    self.log(f"Got an error recreating the test database: {e}")
                    sys.exit(2)
            else:
                self.log("Tests cancelled.")
                sys.exit(1)

        return test_database_name

    def _execute_create_test_db(self, test_database_name: str, keepdb: bool = False) -> None:
        raise NotImplementedError(
            f"The {self.connection.vendor} backend does not support creating test databases."
        )

    def clone_test_db(self, suffix: str, verbosity: int = 1, keepdb: bool = False) -> None:
        """Clone a test database (one per parallel worker)."""
        source_database_name = self.connection.settings_dict["name"]

        if verbosity >= 1:
            action = "Using existing clone" if keepdb else "Cloning test database"
            self.log(
                f"{action} for alias "
                f"{self._get_database_display_str(verbosity, source_database_name)}..."
            )

        # Backends implement the copy; they must honour keepdb
        self._clone_test_db(suffix, verbosity, keepdb)

    def get_test_db_clone_settings(self, suffix: str) -> dict:
        """Return a modified connection settings dict for the n-th clone of a DB."""
        # With parallel workers, each gets its own database named after
        # the test database with a numeric suffix.
        orig_settings_dict = self.connection.settings_dict
        return {
            **orig_settings_dict,
            "name": f"{orig_settings_dict['name']}_{suffix}",
        }

    def _clone_test_db(self, suffix: str, verbosity: int, keepdb: bool = False) -> None:
        raise NotImplementedError(
            "The database backend doesn't support cloning databases. "
            "Disable the option to run tests in parallel."
        )

    def setup_worker_connection(self, worker_id: int) -> None:
        """Point this thread's wrapper at the worker's clone."""
        settings_dict = self.get_test_db_clone_settings(str(worker_id))
        # Only this wrapper changes; the shared settings keep the
        # primary test database name for teardown.
        self.connection.close()
        self.connection.settings_dict = settings_dict

    def destroy_test_db(
        self,
        old_database_name: str | None = None,
        verbosity: int = 1,
        keepdb: bool = False,
        suffix: str | None = None,
    ) -> None:
        """Destroy a test database, prompting the user for confirmation if the
        database already exists.
        """
        self.connection.close()
        if suffix is None:
            test_database_name = self.connection.settings_dict["name"]
        else:
            test_database_name = self.get_test_db_clone_settings(suffix)["name"]

        if verbosity >= 1:
            action = "Preserving" if keepdb else "Destroying"
            self.log(
                f"{action} test database for alias "
                f"{self._get_database_display_str(verbosity, test_database_name)}..."
            )

        # if we want to preserve the database
        # skip the actual destroying piece.
        if not keepdb:
            self._destroy_test_db(test_database_name, verbosity)

        # Restore the original database name
        if old_database_name is not None:
            self.connection.settings_dict["name"] = old_database_name

        test_database_destroyed.send(
            sender=type(self),
            alias=self.connection.alias,
            test_database_name=test_database_name,
            keepdb=keepdb,
        )

    def _destroy_test_db(self, test_database_name: str, verbosity: int) -> None:
        raise NotImplementedError(
            f"The {self.connection.vendor} backend does not support destroying test databases."
        )

    def set_as_test_mirror(self, primary_settings_dict: dict) -> None:
        """Set this database up to be used in testing as a mirror of a primary
        database whose settings are given.
        """
        self.connection.close()
        self.connection.settings_dict["url"] = primary_settings_dict["url"]
        self.connection.settings_dict["name"] = primary_settings_dict["name"]

    def test_db_signature(self, database_name: str | None = None) -> tuple:
        """Return a tuple with elements of self.connection.settings_dict (a
        settings dict) that uniquely identify a database according to the
        backend's own rules.
        """
        url = self.connection.url
        return (
            url.host,
            url.port,
            url.get_backend_name(),
            database_name or self._get_test_db_name(),
        )

    def get_metadata(self) -> MetaData | None:
        """Resolve test.metadata ("module:attr") to a SQLAlchemy MetaData."""
        path = self.connection.settings_dict["test"].get("metadata")
        if not path:
            return None
        try:
            target = resolve_name(path)
        except (ImportError, AttributeError, ValueError) as e:
            raise ImproperlyConfigured(
                f"Cannot import test metadata '{path}' for alias '{self.connection.alias}': {e}"
            ) from e
        # Accept a declarative Base as well as its MetaData
        metadata = getattr(target, "metadata", target)
        if not isinstance(metadata, MetaData):
            raise ImproperlyConfigured(
                f"test.metadata '{path}' is not a SQLAlchemy MetaData (got {type(metadata).__name__})"
            )
        return metadata

    def create_schema(self) -> None:
        """Create the configured tables in the test database.

        Existing tables are left alone, so this is safe with keepdb.
        """
        metadata = self.get_metadata()
        if metadata is None:
            return
        conn = self.connection.ensure_connection()
        metadata.create_all(conn)
        conn.commit()

    def _reflect(self, conn) -> MetaData:
        metadata = MetaData()
        metadata.reflect(bind=conn)
        return metadata

    def serialize_db_to_string(self) -> str:
        """Serialize all data in the database into a JSON string.

        Designed only for test runner usage; will not handle large
        amounts of data.
        """
        conn = self.connection.ensure_connection()
        metadata = self._reflect(conn)
        data = []
        for table in metadata.sorted_tables:
            rows = [dict(row._mapping) for row in conn.execute(select(table))]
            data.append({"table": table.name, "rows": rows})
        conn.rollback()
        return json.dumps(data, default=_json_default)

    def deserialize_db_from_string(self, data: str) -> None:
        """Reload the database with data from a string generated by
        serialize_db_to_string().
        """
        conn = self.connection.ensure_connection()
        metadata = self._reflect(conn)
        for entry in json.loads(data):
            table = metadata.tables.get(entry["table"])
            if table is None or not entry["rows"]:
                continue
            rows = [
                {
                    key: _coerce_value(table.c[key], value) if key in table.c else value
                    for key, value in row.items()
                }
                for row in entry["rows"]
            ]
            conn.execute(table.insert(), rows)
        conn.commit()

    def flush(self) -> None:
        """Delete every row from every table, children first."""
        conn = self.connection.ensure_connection()
        metadata = self._reflect(conn)
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
        conn.commit()
