"""List the discussions that could not be migrated."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from lxml import etree

from .cells import make_cell_reference
from .package import MAIN_NS, qn

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from .models import DiscussionMessage, MigrationOutcome, Person
    from .package import SheetInfo, WorkbookPackage

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

REPORT_COLUMNS = ("Sheet", "Cell", "Anchor", "Author", "Created", "Reason", "Text")
_ILLEGAL_XML_CHARS_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


def _author(message: DiscussionMessage, people: Mapping[str, Person]) -> str:
    person = people.get(message.person_id)
    return person.display_name if person and person.display_name else message.person_id


def _reason(outcome: MigrationOutcome) -> str:
    reason = str(outcome.failure) if outcome.failure else ""
    return f"{reason}: {outcome.detail}" if outcome.detail else reason


def report_rows(outcomes: Sequence[MigrationOutcome], people: Mapping[str, Person]) -> list[tuple[str, ...]]:
    """One row per message of every failed thread, root first."""
    rows: list[tuple[str, ...]] = []
    for outcome in outcomes:
        if outcome.succeeded:
            continue
        for message in outcome.thread.messages:
            rows.append(
                (
                    message.sheet,
                    message.cell,
                    message.anchor,
                    _author(message, people),
                    message.created_at,
                    _reason(outcome),
                    message.text,
                )
            )
    return rows


def _inline_cell(reference: str, value: str) -> etree._Element:
    cell = etree.Element(qn(MAIN_NS, "c"))
    cell.set("r", reference)
    cell.set("t", "inlineStr")
    inline = etree.SubElement(cell, qn(MAIN_NS, "is"))
    text = etree.SubElement(inline, qn(MAIN_NS, "t"))
    text.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")
    text.text = _ILLEGAL_XML_CHARS_RE.sub("", value)
    return cell


def write_report(
    package: WorkbookPackage,
    outcomes: Sequence[MigrationOutcome],
    people: Mapping[str, Person],
    sheet_name: str,
) -> SheetInfo | None:
    """Write the failed threads of ``outcomes`` to the sheet ``sheet_name``.

    The sheet is added when missing; an existing one has its rows replaced.
    Nothing is written when every thread migrated.
    """
    rows = report_rows(outcomes, people)
    if not rows:
        return None

    sheet = package.add_sheet(sheet_name)
    worksheet = package.xml(sheet.part)
    sheet_data = worksheet.find(qn(MAIN_NS, "sheetData"))
    if sheet_data is None:
        sheet_data = etree.SubElement(worksheet, qn(MAIN_NS, "sheetData"))
    for row in list(sheet_data):
        sheet_data.remove(row)

    columns = [chr(ord("A") + index) for index in range(len(REPORT_COLUMNS))]
    for row_number, values in enumerate([REPORT_COLUMNS, *rows], start=1):
        row = etree.SubElement(sheet_data, qn(MAIN_NS, "row"))
        row.set("r", str(row_number))
        for column, value in zip(columns, values, strict=True):
            row.append(_inline_cell(make_cell_reference(column, row_number), value))
    package.mark_dirty(sheet.part)
    logger.info(f"Listed {len(rows)} messages of lost discussions on sheet {sheet.name!r}")
    return sheet


def format_report(outcomes: Sequence[MigrationOutcome]) -> str:
    """Human-readable list of the failed threads."""
    lines: list[str] = []
    for outcome in outcomes:
        if outcome.succeeded:
            continue
        root = outcome.thread.root
        anchor = f" [{root.anchor}]" if root.anchor else ""
        replies = len(outcome.thread.replies)
        lines.append(f"  - {root.sheet}!{root.cell}{anchor} ({replies} replies): {_reason(outcome)}")
    return "\n".join(lines)
