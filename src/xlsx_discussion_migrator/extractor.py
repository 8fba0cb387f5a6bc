"""Read unresolved discussions out of a prior workbook."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .cells import normalize_cell_reference
from .exceptions import PackageError
from .mapping_store import read_mappings
from .models import DiscussionMessage, Person, WorksheetMapping
from .package import PERSON_REL_TYPE, THREADED_COMMENT_REL_TYPE, THREADED_NS, qn

if TYPE_CHECKING:
    from .package import WorkbookPackage

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


def read_people(package: WorkbookPackage) -> dict[str, Person]:
    """Return the workbook's participant directory keyed by person id."""
    people: dict[str, Person] = {}
    for part_name in package.related_parts(package.workbook_part, PERSON_REL_TYPE):
        for element in package.xml(part_name).iter(qn(THREADED_NS, "person")):
            person_id = element.get("id", "")
            if not person_id or person_id in people:
                continue
            people[person_id] = Person(
                person_id=person_id,
                display_name=element.get("displayName", ""),
                user_id=element.get("userId", ""),
                provider_id=element.get("providerId", "None"),
            )
    return people


def extract_discussions(package: WorkbookPackage, *, include_resolved: bool = False) -> list[DiscussionMessage]:
    """Enumerate the discussion messages of ``package``.

    Messages come back in package order (sheet order, then document order
    within a sheet) and carry the anchor of the mapping found for their cell,
    or for their row when no cell mapping exists.

    Args:
        package: The prior workbook
        include_resolved: Also return messages of resolved threads

    Raises:
        PackageError: If a comment part cannot be parsed
    """
    messages: list[DiscussionMessage] = []
    for sheet in package.sheets():
        for part_name in package.related_parts(sheet.part, THREADED_COMMENT_REL_TYPE):
            messages.extend(_read_threaded_comments(package, part_name, sheet.name))

    if not include_resolved:
        total = len(messages)
        messages = _drop_resolved_threads(messages)
        logger.debug(f"Skipped {total - len(messages)} messages of resolved discussions")

    _annotate_anchors(messages, read_mappings(package))
    logger.info(f"Extracted {len(messages)} discussion messages from {package.path}")
    return messages


def _read_threaded_comments(package: WorkbookPackage, part_name: str, sheet_name: str) -> list[DiscussionMessage]:
    messages: list[DiscussionMessage] = []
    for element in package.xml(part_name).iter(qn(THREADED_NS, "threadedComment")):
        message_id = element.get("id", "")
        reference = element.get("ref", "")
        try:
            cell = normalize_cell_reference(reference)
        except ValueError as e:
            msg = f"Threaded comment {message_id} in {part_name} has an invalid cell reference {reference!r}"
            raise PackageError(msg) from e
        messages.append(
            DiscussionMessage(
                message_id=message_id,
                parent_id=element.get("parentId", ""),
                person_id=element.get("personId", ""),
                created_at=element.get("dT", ""),
                text=element.findtext(qn(THREADED_NS, "text")) or "",
                sheet=sheet_name,
                cell=cell,
                resolved=element.get("done", "0") in {"1", "true"},
            )
        )
    return messages


def _drop_resolved_threads(messages: list[DiscussionMessage]) -> list[DiscussionMessage]:
    """Remove resolved messages and every message whose parent chain meets one.

    Excel only flags the root of a resolved thread, so replies inherit the
    state through their parents.
    """
    by_id = {message.message_id: message for message in messages}

    def chain_resolved(message: DiscussionMessage) -> bool:
        seen: set[str] = set()
        current: DiscussionMessage | None = message
        while current is not None and current.message_id not in seen:
            if current.resolved:
                return True
            seen.add(current.message_id)
            current = None if current.is_root else by_id.get(current.parent_id)
        return False

    return [message for message in messages if not chain_resolved(message)]


def _annotate_anchors(messages: list[DiscussionMessage], mappings: list[WorksheetMapping]) -> None:
    by_sheet = {mapping.sheet.casefold(): mapping for mapping in mappings}
    for message in messages:
        mapping = by_sheet.get(message.sheet.casefold())
        if mapping is None:
            continue
        match = mapping.cell_mapping_at(message.cell) or mapping.row_mapping_at(message.row)
        if match is not None:
            message.anchor = match.anchor
