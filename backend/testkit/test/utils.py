"""Test environment and test database setup/teardown."""

import collections
import functools
import logging
import sys
import time
import unittest
from contextlib import contextmanager
from types import SimpleNamespace

from dispatch.signals import setting_changed
from testkit.config import DEFAULT_DB_ALIAS, Settings, get_settings, set_settings
from testkit.db import connections
from testkit.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


class _TestState:
    pass


class override_settings:
    """Temporarily override settings.

    Usable as a context manager, a function decorator or a decorator for
    unittest.TestCase subclasses. Sends setting_changed for each option on
    enter (enter=True) and exit (enter=False).
    """

    def __init__(self, **options):
        self.options = options
        self._previous: Settings | None = None

    def __enter__(self):
        self.enable()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.disable()

    def __call__(self, decorated):
        if isinstance(decorated, type):
            return self.decorate_class(decorated)

        @functools.wraps(decorated)
        def inner(*args, **kwargs):
            with override_settings(**self.options):
                return decorated(*args, **kwargs)

        return inner

    def decorate_class(self, cls: type) -> type:
        if not issubclass(cls, unittest.TestCase):
            raise TypeError(
                "Only unittest.TestCase subclasses can be decorated with override_settings"
            )
        options = self.options
        orig_set_up_class = cls.setUpClass
        orig_tear_down_class = cls.tearDownClass

        def setUpClass(klass):
            context = override_settings(**options)
            context.enable()
            klass._overridden_settings_context = context
            try:
                orig_set_up_class()
            except Exception:
                context.disable()
                raise

        def tearDownClass(klass):
            try:
                orig_tear_down_class()
            finally:
                klass._overridden_settings_context.disable()

        cls.setUpClass = classmethod(setUpClass)
        cls.tearDownClass = classmethod(tearDownClass)
        return cls

    def enable(self) -> None:
        current = get_settings()
        self._previous = current
        values = current.model_dump()
        values.update(self.options)
        set_settings(type(current)(**values))
        for key, value in self.options.items():
            setting_changed.send(sender=Settings, setting=key, value=value, enter=True)

    def disable(self) -> None:
        previous = self._previous
        set_settings(previous)
        self._previous = None
        for key in self.options:
            value = getattr(previous, key, None)
            setting_changed.send(sender=Settings, setting=key, value=value, enter=False)


def setup_test_environment(debug: bool | None = None) -> None:
    """Perform global pre-test setup.

    Raises:
        RuntimeError: If called twice without teardown_test_environment().
    """
    if hasattr(_TestState, "saved_data"):
        # Executing this function twice would overwrite the saved values.
        raise RuntimeError(
            "setup_test_environment() was already called and can't be called "
            "again without first calling teardown_test_environment()."
        )
    debug = get_settings().debug if debug is None else debug

    saved_data = SimpleNamespace()
    _TestState.saved_data = saved_data

    saved_data.override = override_settings(debug=debug)
    saved_data.override.enable()
    logger.debug("Test environment set up (debug=%s)", debug)


def teardown_test_environment() -> None:
    """Restore the state saved by setup_test_environment()."""
    saved_data = _TestState.saved_data
    saved_data.override.disable()
    del _TestState.saved_data
    logger.debug("Test environment torn down")


class TimeKeeper:
    """Record durations of named phases (e.g. database setup)."""

    def __init__(self):
        self.records = collections.defaultdict(list)

    @contextmanager
    def timed(self, name: str):
        self.records[name]
        start_time = time.perf_counter()
        try:
            yield
        finally:
            end_time = time.perf_counter() - start_time
            self.records[name].append(end_time)

    def print_results(self) -> None:
        for name, end_times in self.records.items():
            for record_time in end_times:
                sys.stderr.write(f"{name} took {record_time:.3f}s\n")


class NullTimeKeeper:
    @contextmanager
    def timed(self, name: str):
        yield

    def print_results(self) -> None:
        pass


def dependency_ordered(test_databases, dependencies: dict[str, list[str]]) -> list:
    """Reorder test_databases into an order that honors the dependencies
    described in test.dependencies.

    Args:
        test_databases: Iterable of (signature, (db_name, aliases)).
        dependencies: alias -> aliases it must be created after.

    Raises:
        ImproperlyConfigured: On a circular dependency.
    """
    ordered_test_databases = []
    resolved_databases = set()

    # Maps db signature to dependencies of all its aliases
    dependencies_map = {}

    # Check that no database depends on its own alias
    for sig, (_, aliases) in test_databases:
        all_deps = set()
        for alias in aliases:
            all_deps.update(dependencies.get(alias, []))
        if not all_deps.isdisjoint(aliases):
            raise ImproperlyConfigured(
                f"Circular dependency: databases {sorted(aliases)!r} depend on "
                "each other, but are aliases."
            )
        dependencies_map[sig] = all_deps

    while test_databases:
        changed = False
        deferred = []

        # Try to find a DB that has all its dependencies met
        for signature, (db_name, aliases) in test_databases:
            if dependencies_map[signature].issubset(resolved_databases):
                resolved_databases.update(aliases)
                ordered_test_databases.append((signature, (db_name, aliases)))
                changed = True
            else:
                deferred.append((signature, (db_name, aliases)))

        if not changed:
            raise ImproperlyConfigured("Circular dependency in test.dependencies")
        test_databases = deferred
    return ordered_test_databases


def get_unique_databases_and_mirrors(aliases=None):
    """Figure out which databases actually need to be created.

    Deduplicate entries in settings.databases that correspond to the same
    database or are configured as test mirrors.

    Return two values:
    - test_databases: ordered mapping of signatures to (name, list of aliases)
                      where all aliases share the same underlying database.
    - mirrored_aliases: mapping of mirror aliases to original aliases.
    """
    if aliases is None:
        aliases = list(connections)
    aliases = set(aliases)
    # A mirror needs the database it mirrors
    for alias in list(aliases):
        if alias in connections:
            mirror = connections.settings[alias]["test"]["mirror"]
            if mirror:
                aliases.add(mirror)
    mirrored_aliases = {}
    test_databases = {}
    dependencies = {}
    default_sig = None
    if DEFAULT_DB_ALIAS in connections:
        default_sig = connections[DEFAULT_DB_ALIAS].creation.test_db_signature()

    for alias in connections:
        connection = connections[alias]
        test_settings = connection.settings_dict["test"]

        if test_settings["mirror"]:
            # If the database is marked as a test mirror, save the alias.
            mirrored_aliases[alias] = test_settings["mirror"]
        elif alias in aliases:
            # Store a tuple with DB parameters that uniquely identify it.
            # If we have two aliases with the same values for that tuple,
            # we only need to create the test database once.
            signature = connection.creation.test_db_signature()
            item = test_databases.setdefault(
                signature,
                (connection.settings_dict["name"], []),
            )
            # The default alias creates the database when it shares a signature
            if alias == DEFAULT_DB_ALIAS:
                item[1].insert(0, alias)
            else:
                item[1].append(alias)

            if test_settings["dependencies"] is not None:
                dependencies[alias] = test_settings["dependencies"]
            elif alias != DEFAULT_DB_ALIAS and signature != default_sig:
                dependencies[alias] = [DEFAULT_DB_ALIAS]

    # Dependencies on databases that aren't being created are already met
    created = {alias for _, db_aliases in test_databases.values() for alias in db_aliases}
    for alias, deps in dependencies.items():
        for dep in deps:
            if dep not in connections:
                raise ImproperlyConfigured(
                    f"Database '{alias}' depends on '{dep}', which is not defined."
                )
        dependencies[alias] = [dep for dep in deps if dep in created]

    test_databases = dict(dependency_ordered(list(test_databases.items()), dependencies))
    return test_databases, mirrored_aliases


def setup_databases(
    verbosity: int,
    interactive: bool,
    *,
    time_keeper=None,
    keepdb: bool = False,
    debug_sql: bool = False,
    parallel: int = 0,
    aliases=None,
    serialized_aliases=None,
    **kwargs,
) -> list:
    """Create the test databases.

    Returns:
        List of (connection, old_name, destroy) used by teardown_databases().
    """
    if time_keeper is None:
        time_keeper = NullTimeKeeper()

    test_databases, mirrored_aliases = get_unique_databases_and_mirrors(aliases)

    old_names = []

    for db_name, db_aliases in test_databases.values():
        first_alias = None
        for alias in db_aliases:
            connection = connections[alias]
            old_names.append((connection, db_name, first_alias is None))

            # Actually create the database for the first connection
            if first_alias is None:
                first_alias = alias
                with time_keeper.timed(f"  Creating '{alias}'"):
                    serialize = connection.settings_dict["test"]["serialize"]
                    if serialized_aliases is not None:
                        serialize = serialize and alias in serialized_aliases
                    connection.creation.create_test_db(
                        verbosity=verbosity,
                        autoclobber=not interactive,
                        keepdb=keepdb,
                        serialize=serialize,
                    )
                if parallel > 1:
                    for index in range(parallel):
                        with time_keeper.timed(f"  Cloning '{alias}'"):
                            connection.creation.clone_test_db(
                                suffix=str(index + 1),
                                verbosity=verbosity,
                                keepdb=keepdb,
                            )
            # Configure all other connections as mirrors of the first one
            else:
                connection.creation.set_as_test_mirror(
                    connections[first_alias].settings_dict
                )

    # Configure the test mirrors.
    for alias, mirror_alias in mirrored_aliases.items():
        if mirror_alias not in connections:
            raise ImproperlyConfigured(
                f"Database '{alias}' mirrors '{mirror_alias}', which is not defined."
            )
        connections[alias].creation.set_as_test_mirror(
            connections[mirror_alias].settings_dict
        )

    if debug_sql:
        for alias in connections:
            connections[alias].set_debug_sql(True)

    return old_names


def teardown_databases(old_config, verbosity: int, parallel: int = 0, keepdb: bool = False) -> None:
    """Destroy all the non-mirror databases."""
    for connection, old_name, destroy in old_config:
        if destroy:
            if parallel > 1:
                for index in range(parallel):
                    connection.creation.destroy_test_db(
                        suffix=str(index + 1),
                        verbosity=verbosity,
                        keepdb=keepdb,
                    )
            connection.creation.destroy_test_db(old_name, verbosity, keepdb)
        else:
            connection.close()


def get_runner(settings=None, test_runner_class: str | None = None) -> type:
    """Return the test runner class named by settings.test_runner."""
    from testkit.test.registry import get_runner_class

    if settings is None:
        settings = get_settings()
    return get_runner_class(test_runner_class or settings.test_runner)
