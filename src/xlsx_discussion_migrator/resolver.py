"""Resolve an anchor to its destination cell in the new workbook."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from .cells import column_of, make_cell_reference

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import CellMapping, DiscussionMessage, WorksheetMapping


class ResolutionStatus(StrEnum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    NO_ANCHOR = "no_anchor"


@dataclass(frozen=True)
class Resolution:
    """Where an anchored message belongs in the new workbook, if anywhere."""

    status: ResolutionStatus
    sheet: str = ""
    cell: str = ""
    mapping: CellMapping | None = None

    @property
    def found(self) -> bool:
        return self.status is ResolutionStatus.FOUND


def find_mapping(anchor: str, mappings: Sequence[WorksheetMapping]) -> CellMapping | None:
    """Find the mapping carrying ``anchor``.

    Cell mappings win over row mappings; within each kind the first sheet in
    ``mappings`` wins. Anchors compare case-insensitively.
    """
    if not anchor:
        return None
    candidates = [m for worksheet in mappings for m in worksheet.mappings if m.matches_anchor(anchor)]
    cell_match = next((m for m in candidates if not m.is_row_mapping), None)
    if cell_match is not None:
        return cell_match
    return next((m for m in candidates if m.is_row_mapping), None)


def target_cell(original_cell: str, mapping: CellMapping) -> str:
    """Destination cell for a message at ``original_cell`` matched by ``mapping``.

    Row mappings only move the row: the message keeps its original column.
    """
    if not mapping.is_row_mapping:
        return mapping.cell
    return make_cell_reference(column_of(original_cell), mapping.row)


def resolve(message: DiscussionMessage, mappings: Sequence[WorksheetMapping]) -> Resolution:
    if not message.anchor:
        return Resolution(ResolutionStatus.NO_ANCHOR)
    mapping = find_mapping(message.anchor, mappings)
    if mapping is None:
        return Resolution(ResolutionStatus.NOT_FOUND)
    return Resolution(
        ResolutionStatus.FOUND,
        sheet=mapping.sheet,
        cell=target_cell(message.cell, mapping),
        mapping=mapping,
    )


def mapping_for_sheet(sheet: str, mappings: Sequence[WorksheetMapping]) -> WorksheetMapping | None:
    wanted = sheet.casefold()
    return next((m for m in mappings if m.sheet.casefold() == wanted), None)


def heading_row_above(mapping: WorksheetMapping | None, row: int) -> int | None:
    """Closest heading row strictly above ``row``, or ``None`` when there is none."""
    if mapping is None:
        return None
    return max((heading for heading in mapping.heading_rows() if heading < row), default=None)
