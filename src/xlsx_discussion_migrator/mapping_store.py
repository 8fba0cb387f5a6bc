"""Persistence of cell mappings inside the workbook package.

Each sheet's mappings live in their own custom XML part linked from the
workbook part::

    <OpenApiMappings>
      <Worksheet>Pets_get</Worksheet>
      <MapOpenApiRef Cell="B12">paths./pets.get.responses.200</MapOpenApiRef>
      <MapOpenApiRef Row="10">paths./pets.get/TitleRow</MapOpenApiRef>
    </OpenApiMappings>
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lxml import etree

from .exceptions import MappingError
from .models import CellMapping, WorksheetMapping
from .package import CUSTOM_XML_REL_TYPE, XML_CONTENT_TYPE

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .package import WorkbookPackage

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

ROOT_TAG = "OpenApiMappings"
WORKSHEET_TAG = "Worksheet"
ENTRY_TAG = "MapOpenApiRef"


def serialize_mapping(mapping: WorksheetMapping) -> etree._Element:
    root = etree.Element(ROOT_TAG)
    etree.SubElement(root, WORKSHEET_TAG).text = mapping.sheet
    for cell_mapping in mapping.mappings:
        entry = etree.SubElement(root, ENTRY_TAG)
        if cell_mapping.is_row_mapping:
            entry.set("Row", str(cell_mapping.row))
        else:
            entry.set("Cell", cell_mapping.cell)
        entry.text = cell_mapping.anchor
    return root


def parse_mapping(root: etree._Element) -> WorksheetMapping | None:
    """Rebuild a ``WorksheetMapping`` from a mapping part; ``None`` for foreign custom XML."""
    if root.tag != ROOT_TAG:
        return None
    sheet = (root.findtext(WORKSHEET_TAG) or "").strip()
    if not sheet:
        return None

    entries: list[CellMapping] = []
    for element in root.iter(ENTRY_TAG):
        anchor = (element.text or "").strip()
        cell = element.get("Cell", "")
        row_text = element.get("Row", "")
        try:
            row = int(row_text) if row_text else 0
            entries.append(CellMapping(sheet=sheet, anchor=anchor, cell="" if row > 0 else cell, row=row))
        except (ValueError, MappingError):
            logger.debug(f"Skipping unusable mapping entry on {sheet!r}: cell={cell!r} row={row_text!r}")
    return WorksheetMapping(sheet=sheet, mappings=tuple(entries))


def _mapping_parts(package: WorkbookPackage) -> dict[str, str]:
    """Sheet name (case-folded) -> custom XML part holding its mappings."""
    parts: dict[str, str] = {}
    for part_name in package.related_parts(package.workbook_part, CUSTOM_XML_REL_TYPE):
        root = package.xml(part_name)
        if root.tag == ROOT_TAG:
            sheet = (root.findtext(WORKSHEET_TAG) or "").strip()
            if sheet:
                parts[sheet.casefold()] = part_name
    return parts


def read_mappings(package: WorkbookPackage) -> list[WorksheetMapping]:
    """Read the mappings of every sheet of ``package``, in sheet order.

    Mapping parts naming a sheet that no longer exists are ignored.
    """
    by_sheet: dict[str, WorksheetMapping] = {}
    for part_name in package.related_parts(package.workbook_part, CUSTOM_XML_REL_TYPE):
        mapping = parse_mapping(package.xml(part_name))
        if mapping is not None:
            by_sheet[mapping.sheet.casefold()] = mapping

    result: list[WorksheetMapping] = []
    for sheet_name in package.sheet_names():
        mapping = by_sheet.get(sheet_name.casefold())
        if mapping is not None and mapping.mappings:
            result.append(mapping)
    logger.debug(f"Read mappings for {len(result)} sheets from {package.path}")
    return result


def write_mappings(package: WorkbookPackage, mappings: Iterable[WorksheetMapping]) -> int:
    """Store ``mappings`` in ``package``, replacing any earlier mapping part of the same sheet.

    Returns:
        Number of mapping parts written
    """
    existing = _mapping_parts(package)
    written = 0
    for mapping in mappings:
        part_name = existing.get(mapping.sheet.casefold())
        if part_name is None:
            part_name = package.next_part_name("customXml/item{}.xml")
            package.add_relationship(package.workbook_part, CUSTOM_XML_REL_TYPE, part_name)
            existing[mapping.sheet.casefold()] = part_name
        package.set_xml(part_name, serialize_mapping(mapping))
        written += 1
    if written:
        package.ensure_default("xml", XML_CONTENT_TYPE)
    return written
