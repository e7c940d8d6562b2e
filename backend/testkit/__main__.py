"""CLI entry point for the test runner.

Usage:
    python -m testkit
    python -m testkit tests.test_models tests/test_views.py
    python -m testkit --settings ci.yaml --parallel 4 --keepdb
    python -m testkit --tag slow --exclude-tag flaky -k login
    python -m testkit --list-databases
"""

import argparse
import logging
import sys

from testkit.config import get_settings, load_settings, set_settings
from testkit.db import connections
from testkit.test.utils import get_runner, get_unique_databases_and_mirrors


def _base_parser(add_help: bool) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbtestkit",
        description="Discover and run tests against throwaway test databases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=add_help,
        epilog="""
Examples:
  python -m testkit tests
  python -m testkit tests.test_models.UserTests.test_login
  python -m testkit --parallel 4 --keepdb
  python -m testkit --list-databases
        """,
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="YAML settings file (default: $TESTKIT_SETTINGS_FILE or ./testkit.yaml)",
    )
    parser.add_argument(
        "--testrunner",
        type=str,
        default=None,
        help="Registered runner name or import path (default: settings.test_runner)",
    )
    return parser


def parse_args(argv: list[str] | None = None) -> tuple[argparse.Namespace, type]:
    """Parse arguments in two passes: the runner adds its own options."""
    pre_args, _ = _base_parser(add_help=False).parse_known_args(argv)
    if pre_args.settings:
        set_settings(load_settings(pre_args.settings))
        connections.reset()
    runner_class = get_runner(get_settings(), pre_args.testrunner)

    parser = _base_parser(add_help=True)
    parser.add_argument(
        "test_labels",
        nargs="*",
        metavar="test_label",
        help="Module paths, directories or files to test (default: current directory)",
    )
    parser.add_argument(
        "--list-databases",
        action="store_true",
        help="List the configured databases and their test database names",
    )
    parser.add_argument(
        "-v", "--verbosity",
        type=int,
        choices=[0, 1, 2, 3],
        default=1,
        help="0 = minimal, 1 = normal, 2 = verbose, 3 = debug logging",
    )
    parser.add_argument(
        "--noinput", "--no-input",
        action="store_false",
        dest="interactive",
        help="Never prompt, e.g. before destroying an old test database",
    )
    parser.add_argument(
        "--failfast",
        action="store_true",
        help="Stop running the test suite after the first failed test",
    )
    if hasattr(runner_class, "add_arguments"):
        runner_class.add_arguments(parser)
    return parser.parse_args(argv), runner_class


def cmd_list_databases() -> None:
    """Print the aliases in creation order, without creating anything."""
    if not len(connections):
        print("No databases configured.")
        return

    test_databases, mirrored_aliases = get_unique_databases_and_mirrors()

    print(f"\n{'Alias':<16} {'Backend':<12} {'Test database':<50} {'Notes'}")
    print("-" * 100)
    for _, aliases in test_databases.values():
        first_alias = aliases[0]
        test_name = connections[first_alias].creation._get_test_db_name()
        for alias in aliases:
            connection = connections[alias]
            notes = []
            if alias != first_alias:
                notes.append(f"shares {first_alias}")
            dependencies = connection.settings_dict["test"]["dependencies"]
            if dependencies:
                notes.append(f"after {', '.join(dependencies)}")
            print(f"{alias:<16} {connection.vendor:<12} {test_name:<50} {'; '.join(notes)}")
    for alias, mirror_alias in mirrored_aliases.items():
        connection = connections[alias]
        print(f"{alias:<16} {connection.vendor:<12} {f'(mirror of {mirror_alias})':<50}")
    print()


def main(argv: list[str] | None = None) -> None:
    args, runner_class = parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbosity >= 3 else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    if args.list_databases:
        cmd_list_databases()
        return

    options = vars(args)
    test_labels = options.pop("test_labels")
    for key in ("settings", "testrunner", "list_databases"):
        options.pop(key)

    runner = runner_class(**options)
    failures = runner.run_tests(test_labels)
    sys.exit(bool(failures))


if __name__ == "__main__":
    main()
