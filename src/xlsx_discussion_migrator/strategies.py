"""Placement strategies deciding where each thread goes in the new workbook.

Strategies are tried in a fixed order and the first one whose precondition
holds places the thread:

1. AnchoredStrategy: the root's anchor resolves to a cell on a sheet of the
   new workbook; the thread goes to that cell.
2. NoAnchorSameSheetStrategy: no anchor, but the thread's sheet still
   exists; the thread keeps its column and moves up to the closest section
   heading row (row 1 without one), then down past taken cells.
3. OverflowStrategy: everything else; the thread is stacked in the overflow
   column of the overflow sheet.

The decision is made once per thread, on its root, and the same destination
is copied to every reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .cells import column_of, make_cell_reference
from .models import FailureReason, MigrationOutcome, PlacementStrategy
from .resolver import heading_row_above, mapping_for_sheet, resolve

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .collisions import CollisionResolver
    from .config import MigrationOptions
    from .models import DiscussionThread, WorksheetMapping

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class PlacementContext:
    """What the strategies know about the destination workbook."""

    sheet_names: Sequence[str]
    mappings: Sequence[WorksheetMapping]
    collisions: CollisionResolver
    options: MigrationOptions

    def find_sheet(self, sheet: str) -> str | None:
        """Return the destination's spelling of ``sheet``, or ``None`` if it does not exist."""
        wanted = sheet.casefold()
        return next((name for name in self.sheet_names if name.casefold() == wanted), None)


class MigrationStrategy(Protocol):
    """Contract shared by the placement strategies."""

    name: PlacementStrategy

    def can_handle(self, thread: DiscussionThread, context: PlacementContext) -> bool:
        """Whether this strategy's precondition holds for ``thread``."""
        ...

    def place(self, thread: DiscussionThread, context: PlacementContext) -> MigrationOutcome:
        """Choose and claim a destination and store it on every message of ``thread``."""
        ...


def _placed(thread: DiscussionThread, strategy: PlacementStrategy, sheet: str, cell: str) -> MigrationOutcome:
    thread.set_destination(sheet, cell)
    return MigrationOutcome(thread=thread, strategy=strategy, sheet=sheet, cell=cell)


class AnchoredStrategy:
    name: PlacementStrategy = PlacementStrategy.ANCHORED

    def can_handle(self, thread: DiscussionThread, context: PlacementContext) -> bool:
        resolution = resolve(thread.root, context.mappings)
        return resolution.found and context.find_sheet(resolution.sheet) is not None

    def place(self, thread: DiscussionThread, context: PlacementContext) -> MigrationOutcome:
        resolution = resolve(thread.root, context.mappings)
        sheet = context.find_sheet(resolution.sheet)
        if not resolution.found:
            return MigrationOutcome(thread=thread, failure=FailureReason.ANCHOR_NOT_FOUND_IN_DESTINATION)
        if sheet is None:
            return MigrationOutcome(thread=thread, failure=FailureReason.DESTINATION_SHEET_MISSING)
        # An anchored cell is never moved; a second thread there joins the first
        context.collisions.claim(sheet, resolution.cell)
        return _placed(thread, self.name, sheet, resolution.cell)


class NoAnchorSameSheetStrategy:
    name: PlacementStrategy = PlacementStrategy.NO_ANCHOR_FALLBACK

    def can_handle(self, thread: DiscussionThread, context: PlacementContext) -> bool:
        return not thread.root.anchor and context.find_sheet(thread.root.sheet) is not None

    def place(self, thread: DiscussionThread, context: PlacementContext) -> MigrationOutcome:
        sheet = context.find_sheet(thread.root.sheet)
        if sheet is None:
            return MigrationOutcome(thread=thread, failure=FailureReason.DESTINATION_SHEET_MISSING)
        heading_row = heading_row_above(mapping_for_sheet(sheet, context.mappings), thread.root.row)
        target = make_cell_reference(column_of(thread.root.cell), heading_row or 1)
        cell = context.collisions.same_sheet(sheet, target)
        context.collisions.claim(sheet, cell)
        return _placed(thread, self.name, sheet, cell)


class OverflowStrategy:
    name: PlacementStrategy = PlacementStrategy.OVERFLOW_FALLBACK

    def can_handle(self, thread: DiscussionThread, context: PlacementContext) -> bool:
        return True

    def place(self, thread: DiscussionThread, context: PlacementContext) -> MigrationOutcome:
        reason = fallback_reason(thread, context)
        sheet = context.find_sheet(context.options.overflow_sheet)
        if sheet is None:
            detail = f"overflow sheet {context.options.overflow_sheet!r} not found"
            return MigrationOutcome(thread=thread, failure=reason, detail=detail)
        cell = context.collisions.overflow(sheet, context.options.overflow_column)
        context.collisions.claim(sheet, cell)
        outcome = _placed(thread, self.name, sheet, cell)
        outcome.fallback_reason = reason
        return outcome


def fallback_reason(thread: DiscussionThread, context: PlacementContext) -> FailureReason:
    """Why ``thread`` cannot keep a semantic placement."""
    resolution = resolve(thread.root, context.mappings)
    if not thread.root.anchor:
        return FailureReason.NO_ANCHOR_AND_UNMIGRATABLE
    if not resolution.found:
        return FailureReason.ANCHOR_NOT_FOUND_IN_DESTINATION
    return FailureReason.DESTINATION_SHEET_MISSING


class StrategyChain:
    """Runs the strategies in order for each thread."""

    strategies: list[MigrationStrategy]

    def __init__(self, strategies: Sequence[MigrationStrategy] | None = None) -> None:
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    def place(self, thread: DiscussionThread, context: PlacementContext) -> MigrationOutcome:
        root = thread.root
        try:
            for strategy in self.strategies:
                if strategy.can_handle(thread, context):
                    outcome = strategy.place(thread, context)
                    break
            else:
                outcome = MigrationOutcome(thread=thread, failure=FailureReason.NO_ANCHOR_AND_UNMIGRATABLE)
        except Exception as e:  # noqa: BLE001 - one broken thread must not stop the others
            logger.exception(f"Unexpected error placing thread from {root.sheet}!{root.cell}")
            return MigrationOutcome(thread=thread, failure=FailureReason.UNEXPECTED_ERROR, detail=str(e))

        if outcome.succeeded:
            logger.debug(
                f"Thread from {root.sheet}!{root.cell} -> {outcome.sheet}!{outcome.cell} ({outcome.strategy})"
            )
        else:
            logger.debug(f"Thread from {root.sheet}!{root.cell} not migrated: {outcome.failure}")
        return outcome


def default_strategies() -> list[MigrationStrategy]:
    return [AnchoredStrategy(), NoAnchorSameSheetStrategy(), OverflowStrategy()]
