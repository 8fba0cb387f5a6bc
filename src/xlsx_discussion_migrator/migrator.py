"""Move the open discussions of a prior workbook onto its regenerated version.

The DiscussionMigrator is the central coordinator. It:
1. Reads the discussions of the prior workbook
2. Decides a destination for every thread in the new workbook
3. Rebuilds the threads with fresh identifiers and writes them
4. Reports what could not be migrated

Migration Flow
--------------
Phase 1: Extraction
    - Open both workbooks (any failure here aborts the run)
    - Read the unresolved messages of the prior workbook, each annotated with
      the anchor of the cell it was written on
    - Read the participant directory of the prior workbook
    - Group the messages into threads

Phase 2: Placement
    - Seed the claimed-cell set with the comments already in the new workbook
    - For each thread, in extraction order, run the strategy chain:
      anchored -> same sheet without anchor -> overflow sheet
    - Threads that cannot be placed are recorded with a FailureReason

Phase 3: Reconstruction
    - Assign new identifiers breadth-first, roots before their replies
    - Threads landing on a cell that already holds a thread join it

Phase 4: Assembly and save
    - Write threaded comments, legacy notes, note shapes and participants
    - List failed threads on the lost-discussions sheet
    - Save the new workbook once

Nothing is written to disk before the final save, so an aborted run leaves
the new workbook untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .assembler import PackageAssembler, existing_comment_cells, existing_thread_roots
from .collisions import CollisionResolver
from .config import MigrationOptions
from .extractor import extract_discussions, read_people
from .mapping_store import read_mappings, write_mappings
from .models import FailureReason, PlacementStrategy
from .package import WorkbookPackage
from .report import write_report
from .strategies import PlacementContext, StrategyChain
from .threads import group_threads, new_comment_id, reconstruct

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .models import DiscussionThread, MigrationOutcome, WorksheetMapping

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class MigrationStats:
    """Statistics collected during migration."""

    messages_extracted: int = 0
    threads_found: int = 0
    threads_anchored: int = 0
    threads_same_sheet: int = 0
    threads_overflow: int = 0
    threads_joined: int = 0
    threads_failed: int = 0
    messages_written: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "messages_extracted": self.messages_extracted,
            "threads_found": self.threads_found,
            "threads_anchored": self.threads_anchored,
            "threads_same_sheet": self.threads_same_sheet,
            "threads_overflow": self.threads_overflow,
            "threads_joined": self.threads_joined,
            "threads_failed": self.threads_failed,
            "messages_written": self.messages_written,
        }


@dataclass
class MigrationResult:
    """Result of a migration run."""

    success: bool
    stats: MigrationStats
    outcomes: list[MigrationOutcome]
    output_path: Path | None = None

    @property
    def failures(self) -> list[tuple[DiscussionThread, FailureReason]]:
        """Threads that were not migrated, with the reason."""
        return [(outcome.thread, outcome.failure) for outcome in self.outcomes if outcome.failure is not None]


class DiscussionMigrator:
    """Migrates the discussions of ``old_path`` onto ``new_path``.

    Usage:
        migrator = DiscussionMigrator("v1.xlsx", "v2.xlsx")
        result = migrator.migrate()

    Args:
        old_path: The prior workbook, only read
        new_path: The regenerated workbook receiving the discussions
        mappings: Anchor mappings of the new workbook; read from it when omitted,
            stored into it when given
        options: Placement and reporting settings
        id_factory: Source of identifiers for migrated comments
    """

    def __init__(
        self,
        old_path: str | Path,
        new_path: str | Path,
        *,
        mappings: Sequence[WorksheetMapping] | None = None,
        options: MigrationOptions | None = None,
        id_factory: Callable[[], str] = new_comment_id,
    ) -> None:
        self.old_path: Path = Path(old_path)
        self.new_path: Path = Path(new_path)
        self.mappings: list[WorksheetMapping] | None = list(mappings) if mappings is not None else None
        self.options: MigrationOptions = options or MigrationOptions()
        self.id_factory: Callable[[], str] = id_factory
        logger.info(f"Initialized discussion migration {self.old_path} -> {self.new_path}")

    def migrate(self, output_path: str | Path | None = None) -> MigrationResult:
        """Execute the full migration and save the result.

        Args:
            output_path: Where to save the new workbook; defaults to ``new_path``

        Returns:
            MigrationResult with statistics and per-thread outcomes

        Raises:
            PackageError: If a workbook cannot be opened, read or saved
        """
        stats = MigrationStats()

        # Phase 1
        source = WorkbookPackage.open(self.old_path)
        destination = WorkbookPackage.open(self.new_path)
        messages = extract_discussions(source)
        people = read_people(source)
        threads = group_threads(messages)
        stats.messages_extracted = len(messages)
        stats.threads_found = len(threads)
        logger.info(f"Found {len(threads)} open discussions ({len(messages)} messages)")

        mappings = self.mappings
        if mappings is None:
            mappings = read_mappings(destination)
        else:
            write_mappings(destination, mappings)

        # Phase 2
        outcomes = self._place(threads, destination, mappings)

        # Phase 3
        placed = [outcome for outcome in outcomes if outcome.succeeded]
        reconstruction = reconstruct(
            [outcome.thread for outcome in placed],
            existing_roots=existing_thread_roots(destination),
            id_factory=self.id_factory,
        )
        stats.threads_joined = len(reconstruction.joined)

        # Phase 4
        assembler = PackageAssembler(
            destination,
            people,
            default_display_name=self.options.default_display_name,
            id_factory=self.id_factory,
        )
        groups = reconstruction.by_thread()
        assembly_failures = assembler.write(groups)
        for index, detail in assembly_failures.items():
            outcome = placed[index]
            outcome.failure = FailureReason.UNEXPECTED_ERROR
            outcome.detail = detail
        stats.messages_written = sum(len(group) for index, group in groups if index not in assembly_failures)

        self._count(outcomes, stats)
        if self.options.write_report:
            write_report(destination, outcomes, people, self.options.report_sheet)

        saved_to = destination.save(output_path)
        logger.info(
            f"Migrated {stats.threads_found - stats.threads_failed} of {stats.threads_found} discussions to {saved_to}"
        )
        return MigrationResult(success=stats.threads_failed == 0, stats=stats, outcomes=outcomes, output_path=saved_to)

    def _place(
        self,
        threads: Sequence[DiscussionThread],
        destination: WorkbookPackage,
        mappings: Sequence[WorksheetMapping],
    ) -> list[MigrationOutcome]:
        collisions = CollisionResolver(self.options.search_window, existing_comment_cells(destination))
        context = PlacementContext(
            sheet_names=destination.sheet_names(),
            mappings=mappings,
            collisions=collisions,
            options=self.options,
        )
        chain = StrategyChain()
        return [chain.place(thread, context) for thread in threads]

    @staticmethod
    def _count(outcomes: Sequence[MigrationOutcome], stats: MigrationStats) -> None:
        for outcome in outcomes:
            if outcome.failure is not None:
                stats.threads_failed += 1
                root = outcome.thread.root
                stats.errors.append(f"{root.sheet}!{root.cell}: {outcome.failure}")
                logger.warning(f"Discussion at {root.sheet}!{root.cell} not migrated: {outcome.failure}")
            elif outcome.strategy is PlacementStrategy.ANCHORED:
                stats.threads_anchored += 1
            elif outcome.strategy is PlacementStrategy.NO_ANCHOR_FALLBACK:
                stats.threads_same_sheet += 1
            elif outcome.strategy is PlacementStrategy.OVERFLOW_FALLBACK:
                stats.threads_overflow += 1


def migrate_discussions(
    old_path: str | Path,
    new_path: str | Path,
    mappings: Sequence[WorksheetMapping] | None = None,
    options: MigrationOptions | None = None,
    output_path: str | Path | None = None,
    *,
    id_factory: Callable[[], str] = new_comment_id,
) -> MigrationResult:
    """Migrate the open discussions of ``old_path`` onto ``new_path`` in one call."""
    migrator = DiscussionMigrator(old_path, new_path, mappings=mappings, options=options, id_factory=id_factory)
    return migrator.migrate(output_path)
