"""
Command-line interface for the workbook discussion migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys

from .collisions import DEFAULT_SEARCH_WINDOW
from .config import (
    DEFAULT_OVERFLOW_COLUMN,
    DEFAULT_OVERFLOW_SHEET,
    DEFAULT_REPORT_SHEET,
    MigrationOptions,
)
from .exceptions import MigrationError
from .migrator import DiscussionMigrator
from .report import format_report
from .utils import DEFAULT_LOG_FILE, setup_logging


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Carry the open discussions of a prior API workbook over to its regenerated version"
    )

    # Positional arguments
    _ = parser.add_argument("old_workbook", help="Prior workbook holding the discussions")
    _ = parser.add_argument("new_workbook", help="Regenerated workbook receiving the discussions")

    # Optional arguments with short forms
    _ = parser.add_argument("--output", "-o", help="Where to save the result (default: overwrite NEW_WORKBOOK)")

    _ = parser.add_argument(
        "--overflow-sheet",
        default=DEFAULT_OVERFLOW_SHEET,
        help=f"Sheet receiving discussions without a place of their own (default: {DEFAULT_OVERFLOW_SHEET})",
    )

    _ = parser.add_argument(
        "--overflow-column",
        default=DEFAULT_OVERFLOW_COLUMN,
        help=f"Column of the overflow sheet the discussions are stacked in (default: {DEFAULT_OVERFLOW_COLUMN})",
    )

    _ = parser.add_argument(
        "--search-window",
        type=int,
        default=DEFAULT_SEARCH_WINDOW,
        help=f"Rows searched below a taken cell for a free one (default: {DEFAULT_SEARCH_WINDOW})",
    )

    _ = parser.add_argument(
        "--report-sheet",
        default=DEFAULT_REPORT_SHEET,
        help=f"Sheet listing the discussions that could not be migrated (default: {DEFAULT_REPORT_SHEET})",
    )

    _ = parser.add_argument("--no-report", action="store_true", help="Do not add the lost-discussions sheet")

    _ = parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"File the log is appended to, empty to disable (default: {DEFAULT_LOG_FILE})",
    )

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose, log_file=args.log_file)
    logger = logging.getLogger(__name__)

    try:
        options = MigrationOptions(
            overflow_sheet=args.overflow_sheet,
            overflow_column=args.overflow_column,
            search_window=args.search_window,
            report_sheet=args.report_sheet,
            write_report=not args.no_report,
        )
    except ValueError as e:
        logger.error(f"Invalid option: {e}")  # noqa: TRY400
        sys.exit(1)

    try:
        migrator = DiscussionMigrator(args.old_workbook, args.new_workbook, options=options)
        result = migrator.migrate(args.output)
    except MigrationError:
        logger.exception("Migration failed")
        sys.exit(1)

    # Print report
    for key, value in result.stats.as_dict().items():
        print(f"{key}: {value}")  # noqa: T201
    if result.failures:
        print(f"{len(result.failures)} discussions could not be migrated:")  # noqa: T201
        print(format_report(result.outcomes))  # noqa: T201

    if result.success:
        sys.exit(0)
    else:
        sys.exit(1)
