"""Data models for migrating discussions between two generated workbooks.

These models represent the data exchanged between the extractor, the
placement strategies, the thread reconstructor and the package assembler.
They are intentionally simple and know nothing about the XML parts they are
read from or written to.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum

from .anchors import is_heading_anchor
from .cells import normalize_cell_reference, row_of
from .exceptions import MappingError


class PlacementStrategy(StrEnum):
    """Which placement policy put a thread on its destination cell."""

    ANCHORED = "anchored"
    NO_ANCHOR_FALLBACK = "no_anchor_fallback"
    OVERFLOW_FALLBACK = "overflow_fallback"


class FailureReason(StrEnum):
    """Why a thread could not be migrated."""

    NO_ANCHOR_AND_UNMIGRATABLE = "no_anchor_and_unmigratable"
    ANCHOR_NOT_FOUND_IN_DESTINATION = "anchor_not_found_in_destination"
    DESTINATION_SHEET_MISSING = "destination_sheet_missing"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass(frozen=True)
class CellMapping:
    """Association between a sheet location and an anchor.

    Exactly one of ``cell`` and ``row`` is set: a cell mapping targets a single
    cell, a row mapping (``row > 0``) targets a whole row and lets the source
    message keep its original column when it is re-anchored.
    """

    sheet: str
    anchor: str
    cell: str = ""
    row: int = 0

    def __post_init__(self) -> None:
        if bool(self.cell) == (self.row > 0):
            msg = f"Mapping for {self.anchor!r} on {self.sheet!r} needs exactly one of cell or row"
            raise MappingError(msg)
        if self.cell:
            object.__setattr__(self, "cell", normalize_cell_reference(self.cell))

    @property
    def is_row_mapping(self) -> bool:
        return self.row > 0

    @property
    def is_heading(self) -> bool:
        return is_heading_anchor(self.anchor)

    @property
    def location(self) -> str:
        return self.cell if self.cell else f"row {self.row}"

    def matches_anchor(self, anchor: str) -> bool:
        return self.anchor.casefold() == anchor.casefold()


@dataclass(frozen=True)
class WorksheetMapping:
    """The ordered, immutable collection of mappings for one sheet."""

    sheet: str
    mappings: tuple[CellMapping, ...] = ()

    def cell_mapping_at(self, cell_reference: str) -> CellMapping | None:
        cell = normalize_cell_reference(cell_reference)
        return next((m for m in self.mappings if m.cell == cell), None)

    def row_mapping_at(self, row: int) -> CellMapping | None:
        return next((m for m in self.mappings if m.row == row), None)

    def heading_rows(self) -> list[int]:
        """Rows registered as section headings, in ascending order."""
        return sorted({m.row for m in self.mappings if m.is_row_mapping and m.is_heading})


class MappingContext:
    """Collects the cell mappings of one generation run.

    A context is created per run and handed to whoever needs the mappings;
    nothing is kept at module level, so two runs never see each other's
    entries.
    """

    def __init__(self) -> None:
        self._sheets: dict[str, list[CellMapping]] = {}
        self._sheet_names: dict[str, str] = {}
        self._locations: dict[tuple[str, str], str] = {}

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._sheets.values())

    def add_cell(self, sheet: str, cell: str, anchor: str) -> CellMapping:
        return self._add(CellMapping(sheet=sheet, anchor=anchor, cell=cell))

    def add_row(self, sheet: str, row: int, anchor: str) -> CellMapping:
        return self._add(CellMapping(sheet=sheet, anchor=anchor, row=row))

    def _add(self, mapping: CellMapping) -> CellMapping:
        sheet_key = mapping.sheet.casefold()
        key = (sheet_key, mapping.anchor.casefold())
        existing_location = self._locations.get(key)
        if existing_location is not None:
            if existing_location != mapping.location:
                msg = (
                    f"Anchor {mapping.anchor!r} already mapped to {existing_location} on sheet "
                    f"{mapping.sheet!r}, cannot also map it to {mapping.location}"
                )
                raise MappingError(msg)
            return mapping
        self._locations[key] = mapping.location
        sheet_name = self._sheet_names.setdefault(sheet_key, mapping.sheet)
        self._sheets.setdefault(sheet_name, []).append(mapping)
        return mapping

    def worksheet(self, sheet: str) -> WorksheetMapping:
        sheet_name = self._sheet_names.get(sheet.casefold(), sheet)
        return WorksheetMapping(sheet=sheet_name, mappings=tuple(self._sheets.get(sheet_name, [])))

    def freeze(self) -> list[WorksheetMapping]:
        return [WorksheetMapping(sheet=name, mappings=tuple(entries)) for name, entries in self._sheets.items()]


@dataclass(frozen=True)
class Person:
    """A participant directory entry referenced by threaded comments."""

    person_id: str
    display_name: str
    user_id: str = ""
    provider_id: str = "None"


@dataclass
class DiscussionMessage:
    """One threaded comment extracted from the prior workbook.

    ``override_sheet``/``override_cell`` are set by the placement strategies
    once the thread this message belongs to has a destination.
    """

    message_id: str
    parent_id: str
    person_id: str
    created_at: str
    text: str
    sheet: str
    cell: str
    resolved: bool = False
    anchor: str = ""
    override_sheet: str = ""
    override_cell: str = ""

    @property
    def is_root(self) -> bool:
        return not self.parent_id or self.parent_id == self.message_id

    @property
    def row(self) -> int:
        return row_of(self.cell)

    @property
    def destination(self) -> tuple[str, str] | None:
        if self.override_sheet and self.override_cell:
            return self.override_sheet, self.override_cell
        return None

    def set_destination(self, sheet: str, cell: str) -> None:
        self.override_sheet = sheet
        self.override_cell = cell

    def with_identity(self, message_id: str, parent_id: str) -> DiscussionMessage:
        """Return a copy carrying a new identifier and parent reference."""
        return replace(self, message_id=message_id, parent_id=parent_id)


@dataclass
class DiscussionThread:
    """A root message plus every message whose parent chain leads to it."""

    root: DiscussionMessage
    replies: list[DiscussionMessage] = field(default_factory=list)

    @property
    def thread_id(self) -> str:
        return self.root.message_id

    @property
    def messages(self) -> list[DiscussionMessage]:
        return [self.root, *self.replies]

    def set_destination(self, sheet: str, cell: str) -> None:
        """Place the whole thread; replies never get a destination of their own."""
        for message in self.messages:
            message.set_destination(sheet, cell)


@dataclass
class MigrationOutcome:
    """Per-thread result of the placement phase."""

    thread: DiscussionThread
    strategy: PlacementStrategy | None = None
    sheet: str = ""
    cell: str = ""
    failure: FailureReason | None = None
    fallback_reason: FailureReason | None = None
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.failure is None and self.strategy is not None
