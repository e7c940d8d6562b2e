"""Testing tools: test case classes, test database setup and the runner."""

from testkit.test.registry import get_runner_class, list_runners, register_runner
from testkit.test.testcases import SimpleTestCase, TestCase, TransactionTestCase, tag
from testkit.test.utils import (
    get_runner,
    override_settings,
    setup_databases,
    setup_test_environment,
    teardown_databases,
    teardown_test_environment,
)

__all__ = [
    "SimpleTestCase",
    "TestCase",
    "TransactionTestCase",
    "get_runner",
    "get_runner_class",
    "list_runners",
    "override_settings",
    "register_runner",
    "setup_databases",
    "setup_test_environment",
    "tag",
    "teardown_databases",
    "teardown_test_environment",
]
