"""PostgreSQL backend.

Test databases are created and dropped through the ``postgres``
maintenance database, since a database can't be created or dropped
from a connection to itself.
"""

import logging
import sys

from sqlalchemy import create_engine, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import DBAPIError

from testkit.db.backends.base import BaseDatabaseWrapper
from testkit.db.creation import BaseDatabaseCreation
from testkit.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"
DUPLICATE_DATABASE = "42P04"

_preparer = postgresql.dialect().identifier_preparer


def quote_name(name: str) -> str:
    return _preparer.quote_identifier(name)


def _is_duplicate_database(exc: Exception) -> bool:
    orig = getattr(exc, "orig", exc)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == DUPLICATE_DATABASE or "already exists" in str(orig)


class DatabaseCreation(BaseDatabaseCreation):
    """PostgreSQL test database creation."""

    def _get_database_create_suffix(self, encoding: str | None = None, template: str | None = None) -> str:
        suffix = ""
        if encoding:
            suffix += f" ENCODING '{encoding}'"
        if template:
            suffix += f" TEMPLATE {quote_name(template)}"
        return suffix and "WITH" + suffix

    def sql_table_creation_suffix(self) -> str:
        test_settings = self.connection.settings_dict["test"]
        if test_settings.get("collation") is not None:
            raise ImproperlyConfigured(
                "PostgreSQL does not support collation setting at database creation time."
            )
        return self._get_database_create_suffix(
            encoding=test_settings["charset"],
            template=test_settings.get("template"),
        )

    def _maintenance_engine(self):
        url = self.connection.url.set(database=MAINTENANCE_DB)
        return create_engine(url, isolation_level="AUTOCOMMIT")

    def _execute_statement(self, sql: str) -> None:
        """Run one statement on the maintenance database in autocommit mode."""
        logger.debug("Executing on %s: %s", MAINTENANCE_DB, sql)
        engine = self._maintenance_engine()
        try:
            with engine.connect() as conn:
                conn.execute(text(sql))
        finally:
            engine.dispose()

    def _database_exists(self, database_name: str) -> bool:
        engine = self._maintenance_engine()
        try:
            with engine.connect() as conn:
                row = conn.execute(
                    text("SELECT 1 FROM pg_catalog.pg_database WHERE datname = :name"),
                    {"name": database_name},
                ).first()
        finally:
            engine.dispose()
        return row is not None

    def _execute_create_test_db(self, test_database_name: str, keepdb: bool = False) -> None:
        suffix = self.sql_table_creation_suffix()
        try:
            if keepdb and self._database_exists(test_database_name):
                # If the database should be kept and it already exists, don't
                # try to create a new one.
                return
            self._execute_statement(f"CREATE DATABASE {quote_name(test_database_name)} {suffix}".rstrip())
        except DBAPIError as e:
            if not _is_duplicate_database(e):
                # All errors except "database already exists" cancel tests.
                self.log(f"Got an error creating the test database: {e}")
                sys.exit(2)
            elif not keepdb:
                # If the database should be kept, ignore "database already
                # exists".
                raise

    def _clone_test_db(self, suffix: str, verbosity: int, keepdb: bool = False) -> None:
        source_database_name = self.connection.settings_dict["name"]
        target_database_name = self.get_test_db_clone_settings(suffix)["name"]
        create_sql = (
            f"CREATE DATABASE {quote_name(target_database_name)} "
            f"WITH TEMPLATE {quote_name(source_database_name)}"
        )
        # The template database must have no open connections
        self.connection.close()
        try:
            self._execute_create_clone(create_sql, target_database_name, keepdb)
        except DBAPIError as e:
            if keepdb and _is_duplicate_database(e):
                return
            try:
                if verbosity >= 1:
                    self.log(
                        "Destroying old test database for alias "
                        f"{self._get_database_display_str(verbosity, target_database_name)}..."
                    )
                self._destroy_test_db(target_database_name, verbosity)
                self._execute_statement(create_sql)
            except Exception as e:
                self.log(f"Got an error cloning the test database: {e}")
                sys.exit(2)

    def _execute_create_clone(self, create_sql: str, target_database_name: str, keepdb: bool) -> None:
        if keepdb and self._database_exists(target_database_name):
            return
        self._execute_statement(create_sql)

    def _destroy_test_db(self, test_database_name: str, verbosity: int) -> None:
        self._execute_statement(f"DROP DATABASE IF EXISTS {quote_name(test_database_name)}")


class DatabaseWrapper(BaseDatabaseWrapper):
    vendor = "postgresql"
    creation_class = DatabaseCreation

    def get_engine_kwargs(self) -> dict:
        kwargs = super().get_engine_kwargs()
        kwargs["pool_pre_ping"] = True  # Validate before use
        return kwargs
