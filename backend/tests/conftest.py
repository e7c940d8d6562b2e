"""Shared fixtures: every test starts with a single in-memory SQLite alias."""

import pytest

from testkit.config import DatabaseSettings, Settings, set_settings
from testkit.db import connections
from testkit.test import utils

SCHEMA = "sample_schema:metadata"


@pytest.fixture(autouse=True)
def isolated_settings():
    set_settings(Settings(databases={"default": DatabaseSettings(url="sqlite://")}))
    connections.reset()
    yield
    connections.reset()
    set_settings(None)
    # A test that failed mid-run may leave the environment set up
    if hasattr(utils._TestState, "saved_data"):
        utils.teardown_test_environment()


@pytest.fixture
def memory_db():
    """Configure a schema-backed in-memory default alias."""
    connections.configure({"default": {"url": "sqlite://", "test": {"metadata": SCHEMA}}})
    return connections["default"]


@pytest.fixture
def test_databases(memory_db):
    """Create the test databases for the duration of a test."""
    old_config = utils.setup_databases(verbosity=0, interactive=False)
    yield connections
    utils.teardown_databases(old_config, verbosity=0)
