"""
Command-line interface for the Trello to GitLab migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from enum import IntEnum

from .exceptions import ConfigurationError
from .migrator import MigrationStats, TrelloToGitLabMigrator
from .options import ConverterAction, ConverterOptions, load_options
from .progress import ProgressCollector, log_progress
from .utils import setup_logging

logger: logging.Logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    SUCCESS = 0
    OPTIONS_ERROR = 1
    CONVERSION_ERROR = 2


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Convert Trello cards to GitLab issues")

    _ = parser.add_argument("options_file", help="Path to the JSON options file")

    # Run mode overrides for the action configured in the options file
    mode = parser.add_mutually_exclusive_group()
    _ = mode.add_argument(
        "--all", "--import", dest="action", action="store_const", const=ConverterAction.ALL, help="Full migration"
    )
    _ = mode.add_argument(
        "--delete",
        metavar="ISSUE_ID",
        nargs="?",
        type=int,
        const=-1,
        help="Delete issues with an iid greater than ISSUE_ID (default: value from the options file)",
    )
    _ = mode.add_argument(
        "--adjust-mentions",
        dest="action",
        action="store_const",
        const=ConverterAction.ADJUST_MENTIONS,
        help="Rewrite mentions in already migrated issues",
    )
    _ = mode.add_argument(
        "--move-custom-fields",
        dest="action",
        action="store_const",
        const=ConverterAction.MOVE_CUSTOM_FIELDS,
        help="Append custom fields to already migrated issues",
    )
    _ = mode.add_argument(
        "--associate",
        dest="action",
        action="store_const",
        const=ConverterAction.ASSOCIATE_WITH_TRELLO,
        help="Add migration markers to issues matching a card by title",
    )
    _ = mode.add_argument(
        "--replace-links",
        dest="action",
        action="store_const",
        const=ConverterAction.REPLACE_TRELLO_LINKS,
        help="Rewrite Trello card links into issue references",
    )

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def apply_overrides(options: ConverterOptions, args: argparse.Namespace) -> None:
    """Let command line flags override the action from the options file."""
    delete: int | None = getattr(args, "delete", None)
    if delete is not None:
        options.global_options.action = ConverterAction.DELETE_ISSUES
        if delete >= 0:
            options.global_options.delete_if_greater_than_issue_id = delete
        return

    action: ConverterAction | None = getattr(args, "action", None)
    if action is not None:
        options.global_options.action = action


def _print_summary(stats: MigrationStats, infos: list[str]) -> None:
    print("\n" + "=" * 50)
    print("MIGRATION SUMMARY")
    print("=" * 50)
    print(f"Issues created:   {stats.issues_created}")
    print(f"Comments created: {stats.comments_created}")
    print(f"Issues closed:    {stats.issues_closed}")
    print(f"Issues updated:   {stats.issues_updated}")
    print(f"Markers written:  {stats.markers_created}")
    print(f"Cards skipped:    {stats.cards_skipped}")
    if infos:
        print(f"\nNotes ({len(infos)}):")
        for info in infos:
            print(f"  - {info}")
    if stats.errors:
        print(f"\nErrors ({len(stats.errors)}):")
        for error in stats.errors:
            print("  - " + error.replace("\n", "\n    "))
    print("=" * 50)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        options = load_options(args.options_file)
        apply_overrides(options, args)
        collector = ProgressCollector(forward=log_progress)
        migrator = TrelloToGitLabMigrator.from_options(options, collector)
    except ConfigurationError as e:
        logger.error(str(e))  # noqa: TRY400
        sys.exit(ExitCode.OPTIONS_ERROR)

    try:
        success = migrator.run()
    except Exception:
        logger.exception("Migration failed")
        sys.exit(ExitCode.CONVERSION_ERROR)

    _print_summary(migrator.stats, collector.infos)
    sys.exit(ExitCode.SUCCESS if success else ExitCode.CONVERSION_ERROR)
