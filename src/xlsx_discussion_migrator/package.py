"""Access to the parts of an ``.xlsx`` package.

A workbook package is a zip archive of XML parts tied together by
relationship parts (``_rels/*.rels``) and a content-type registry
(``[Content_Types].xml``). ``WorkbookPackage`` loads the whole archive into
memory, lets callers read and replace parts, and writes everything back in a
single save, so an interrupted run never leaves a half-written file behind.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

from lxml import etree

from .exceptions import PackageError

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

MAIN_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
DOC_REL_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PKG_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
CT_NS = "http://schemas.openxmlformats.org/package/2006/content-types"
THREADED_NS = "http://schemas.microsoft.com/office/spreadsheetml/2018/threadedcomments"
MC_NS = "http://schemas.openxmlformats.org/markup-compatibility/2006"
XR_NS = "http://schemas.microsoft.com/office/spreadsheetml/2014/revision"

OFFICE_DOCUMENT_REL_TYPE = f"{DOC_REL_NS}/officeDocument"
WORKSHEET_REL_TYPE = f"{DOC_REL_NS}/worksheet"
COMMENTS_REL_TYPE = f"{DOC_REL_NS}/comments"
VML_DRAWING_REL_TYPE = f"{DOC_REL_NS}/vmlDrawing"
CUSTOM_XML_REL_TYPE = f"{DOC_REL_NS}/customXml"
THREADED_COMMENT_REL_TYPE = "http://schemas.microsoft.com/office/2017/10/relationships/threadedComment"
PERSON_REL_TYPE = "http://schemas.microsoft.com/office/2017/10/relationships/person"

WORKSHEET_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml"
COMMENTS_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.comments+xml"
THREADED_COMMENTS_CONTENT_TYPE = "application/vnd.ms-excel.threadedcomments+xml"
PERSON_CONTENT_TYPE = "application/vnd.ms-excel.person+xml"
VML_DRAWING_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.vmlDrawing"
RELATIONSHIPS_CONTENT_TYPE = "application/vnd.openxmlformats-package.relationships+xml"
XML_CONTENT_TYPE = "application/xml"

CONTENT_TYPES_PART = "[Content_Types].xml"
ROOT_RELS_PART = "_rels/.rels"
RELATIONSHIP_ID_RE = re.compile(r"^rId([0-9]+)$")

_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)
# VML written by Excel is not always well-formed (unclosed <br> in notes).
_VML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, recover=True)


@dataclass(frozen=True)
class Relationship:
    """One entry of a ``.rels`` part, with its target resolved to a part name."""

    rel_id: str
    rel_type: str
    target: str
    external: bool = False


@dataclass(frozen=True)
class SheetInfo:
    name: str
    part: str
    sheet_id: int
    rel_id: str


def rels_part_for(part_name: str) -> str:
    """Return the relationship part name that belongs to ``part_name``."""
    if not part_name:
        return ROOT_RELS_PART
    directory, filename = posixpath.split(part_name)
    return posixpath.join(directory, "_rels", f"{filename}.rels")


def resolve_target(source_part: str, target: str) -> str:
    if target.startswith("/"):
        return target.lstrip("/")
    base = posixpath.dirname(source_part)
    return posixpath.normpath(posixpath.join(base, target))


def relative_target(source_part: str, target_part: str) -> str:
    base = posixpath.dirname(source_part) or "."
    return posixpath.relpath(target_part, base)


def qn(namespace: str, tag: str) -> str:
    """Qualified ``{namespace}tag`` name."""
    return f"{{{namespace}}}{tag}"


class WorkbookPackage:
    """In-memory view of an ``.xlsx`` archive."""

    path: Path
    workbook_part: str

    def __init__(self, path: Path, parts: dict[str, bytes]) -> None:
        self.path = path
        self._parts: dict[str, bytes] = parts
        self._xml: dict[str, etree._Element] = {}
        self._dirty: set[str] = set()

        if CONTENT_TYPES_PART not in parts:
            msg = f"{path} is not a workbook package: {CONTENT_TYPES_PART} is missing"
            raise PackageError(msg)
        office_documents = self.related_parts("", OFFICE_DOCUMENT_REL_TYPE)
        self.workbook_part = office_documents[0] if office_documents else "xl/workbook.xml"
        if self.workbook_part not in parts:
            msg = f"{path} is not a workbook package: workbook part {self.workbook_part} is missing"
            raise PackageError(msg)

    @classmethod
    def open(cls, path: str | Path) -> WorkbookPackage:
        """Load every part of the archive at ``path``.

        Raises:
            PackageError: If the file is missing or is not a valid workbook archive
        """
        package_path = Path(path)
        if not package_path.is_file():
            msg = f"Workbook not found: {package_path}"
            raise PackageError(msg)
        try:
            with zipfile.ZipFile(package_path, "r") as archive:
                parts = {info.filename: archive.read(info) for info in archive.infolist() if not info.is_dir()}
        except (zipfile.BadZipFile, OSError) as e:
            msg = f"Cannot read workbook {package_path}: {e}"
            raise PackageError(msg) from e
        logger.debug(f"Opened {package_path} with {len(parts)} parts")
        return cls(package_path, parts)

    # Parts

    def has_part(self, part_name: str) -> bool:
        return part_name in self._parts or part_name in self._xml

    def part_names(self) -> list[str]:
        return list(self._parts)

    def read_bytes(self, part_name: str) -> bytes:
        if part_name in self._xml and part_name in self._dirty:
            return self._serialize(self._xml[part_name])
        try:
            return self._parts[part_name]
        except KeyError as e:
            msg = f"Part {part_name} not found in {self.path}"
            raise PackageError(msg) from e

    def write_bytes(self, part_name: str, data: bytes) -> None:
        self._parts[part_name] = data
        self._xml.pop(part_name, None)
        self._dirty.discard(part_name)

    def xml(self, part_name: str, *, recover: bool = False) -> etree._Element:
        """Return the parsed root element of an XML part (cached)."""
        if part_name not in self._xml:
            parser = _VML_PARSER if recover else _XML_PARSER
            try:
                root = etree.fromstring(self.read_bytes(part_name), parser)
            except etree.XMLSyntaxError as e:
                msg = f"Part {part_name} of {self.path} is not well-formed XML: {e}"
                raise PackageError(msg) from e
            if root is None:
                msg = f"Part {part_name} of {self.path} is empty"
                raise PackageError(msg)
            self._xml[part_name] = root
        return self._xml[part_name]

    def set_xml(self, part_name: str, root: etree._Element) -> None:
        self._xml[part_name] = root
        self._parts.setdefault(part_name, b"")
        self._dirty.add(part_name)

    def mark_dirty(self, part_name: str) -> None:
        self.xml(part_name)
        self._dirty.add(part_name)

    def next_part_name(self, template: str) -> str:
        """First free name for ``template`` (e.g. ``"xl/comments{}.xml"``), counting from 1."""
        index = 1
        while self.has_part(template.format(index)):
            index += 1
        return template.format(index)

    # Relationships

    def relationships(self, source_part: str) -> list[Relationship]:
        rels_part = rels_part_for(source_part)
        if not self.has_part(rels_part):
            return []
        relationships: list[Relationship] = []
        for element in self.xml(rels_part):
            if not isinstance(element.tag, str) or etree.QName(element).localname != "Relationship":
                continue
            external = element.get("TargetMode", "") == "External"
            target = element.get("Target", "")
            relationships.append(
                Relationship(
                    rel_id=element.get("Id", ""),
                    rel_type=element.get("Type", ""),
                    target=target if external else resolve_target(source_part, target),
                    external=external,
                )
            )
        return relationships

    def related_parts(self, source_part: str, rel_type: str) -> list[str]:
        return [
            rel.target
            for rel in self.relationships(source_part)
            if rel.rel_type == rel_type and not rel.external and self.has_part(rel.target)
        ]

    def relationship_target(self, source_part: str, rel_id: str) -> str | None:
        return next((rel.target for rel in self.relationships(source_part) if rel.rel_id == rel_id), None)

    def add_relationship(self, source_part: str, rel_type: str, target_part: str) -> str:
        """Link ``source_part`` to ``target_part``, reusing an identical link; returns its ``rId``."""
        for rel in self.relationships(source_part):
            if rel.rel_type == rel_type and rel.target == target_part:
                return rel.rel_id

        rels_part = rels_part_for(source_part)
        if self.has_part(rels_part):
            root = self.xml(rels_part)
        else:
            root = etree.Element(qn(PKG_REL_NS, "Relationships"), nsmap={None: PKG_REL_NS})
            self.ensure_default("rels", RELATIONSHIPS_CONTENT_TYPE)

        max_rid = 0
        for element in root:
            match = RELATIONSHIP_ID_RE.match(element.get("Id", "")) if isinstance(element.tag, str) else None
            if match:
                max_rid = max(max_rid, int(match.group(1)))
        rel_id = f"rId{max_rid + 1}"
        rel = etree.SubElement(root, qn(PKG_REL_NS, "Relationship"))
        rel.set("Id", rel_id)
        rel.set("Type", rel_type)
        rel.set("Target", relative_target(source_part, target_part))
        self.set_xml(rels_part, root)
        return rel_id

    # Content types

    def ensure_override(self, part_name: str, content_type: str) -> None:
        root = self.xml(CONTENT_TYPES_PART)
        wanted = f"/{part_name}"
        for element in root.iter(qn(CT_NS, "Override")):
            if element.get("PartName") == wanted:
                if element.get("ContentType") != content_type:
                    element.set("ContentType", content_type)
                    self.mark_dirty(CONTENT_TYPES_PART)
                return
        override = etree.SubElement(root, qn(CT_NS, "Override"))
        override.set("PartName", wanted)
        override.set("ContentType", content_type)
        self.mark_dirty(CONTENT_TYPES_PART)

    def ensure_default(self, extension: str, content_type: str) -> None:
        root = self.xml(CONTENT_TYPES_PART)
        for element in root.iter(qn(CT_NS, "Default")):
            if element.get("Extension", "").lower() == extension.lower():
                return
        default = etree.Element(qn(CT_NS, "Default"))
        default.set("Extension", extension)
        default.set("ContentType", content_type)
        # Defaults precede overrides in the registry
        first_override = next(root.iter(qn(CT_NS, "Override")), None)
        if first_override is not None:
            first_override.addprevious(default)
        else:
            root.append(default)
        self.mark_dirty(CONTENT_TYPES_PART)

    # Sheets

    def sheets(self) -> list[SheetInfo]:
        workbook = self.xml(self.workbook_part)
        result: list[SheetInfo] = []
        for element in workbook.iter(qn(MAIN_NS, "sheet")):
            rel_id = element.get(qn(DOC_REL_NS, "id"), "")
            part = self.relationship_target(self.workbook_part, rel_id)
            if part is None or not self.has_part(part):
                msg = f"Sheet {element.get('name')!r} of {self.path} has no worksheet part"
                raise PackageError(msg)
            result.append(
                SheetInfo(
                    name=element.get("name", ""),
                    part=part,
                    sheet_id=int(element.get("sheetId", "0")),
                    rel_id=rel_id,
                )
            )
        return result

    def sheet_names(self) -> list[str]:
        return [sheet.name for sheet in self.sheets()]

    def find_sheet(self, sheet_name: str) -> SheetInfo | None:
        """Look a sheet up by name; sheet names are case-insensitive in Excel."""
        wanted = sheet_name.casefold()
        return next((sheet for sheet in self.sheets() if sheet.name.casefold() == wanted), None)

    def add_sheet(self, sheet_name: str) -> SheetInfo:
        """Append an empty worksheet named ``sheet_name`` to the workbook."""
        existing = self.find_sheet(sheet_name)
        if existing is not None:
            return existing

        part = self.next_part_name("xl/worksheets/sheet{}.xml")
        worksheet = etree.Element(qn(MAIN_NS, "worksheet"), nsmap={None: MAIN_NS, "r": DOC_REL_NS})
        etree.SubElement(worksheet, qn(MAIN_NS, "sheetData"))
        self.set_xml(part, worksheet)
        self.ensure_override(part, WORKSHEET_CONTENT_TYPE)
        rel_id = self.add_relationship(self.workbook_part, WORKSHEET_REL_TYPE, part)

        workbook = self.xml(self.workbook_part)
        sheets_element = workbook.find(qn(MAIN_NS, "sheets"))
        if sheets_element is None:
            msg = f"Workbook part of {self.path} has no sheets element"
            raise PackageError(msg)
        sheet_id = max((sheet.sheet_id for sheet in self.sheets()), default=0) + 1
        sheet_element = etree.SubElement(sheets_element, qn(MAIN_NS, "sheet"))
        sheet_element.set("name", sheet_name)
        sheet_element.set("sheetId", str(sheet_id))
        sheet_element.set(qn(DOC_REL_NS, "id"), rel_id)
        self.mark_dirty(self.workbook_part)
        logger.debug(f"Added sheet {sheet_name!r} as {part}")
        return SheetInfo(name=sheet_name, part=part, sheet_id=sheet_id, rel_id=rel_id)

    # Saving

    @staticmethod
    def _serialize(root: etree._Element) -> bytes:
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)

    def save(self, output_path: str | Path | None = None) -> Path:
        """Write the package in one go.

        The archive is written to a temporary file next to the destination and
        moved into place, so the destination is either the old file or the
        complete new one.
        """
        for part_name in sorted(self._dirty):
            self._parts[part_name] = self._serialize(self._xml[part_name])
        self._dirty.clear()

        destination = Path(output_path) if output_path is not None else self.path
        ordered = [CONTENT_TYPES_PART, *(name for name in self._parts if name != CONTENT_TYPES_PART)]
        temp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=destination.parent, prefix=f".{destination.name}.", suffix=".tmp", delete=False
            ) as handle:
                temp_name = handle.name
                with zipfile.ZipFile(handle, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                    for part_name in ordered:
                        archive.writestr(part_name, self._parts[part_name])
            os.replace(temp_name, destination)
        except OSError as e:
            if temp_name and Path(temp_name).exists():
                Path(temp_name).unlink()
            msg = f"Failed to save workbook {destination}: {e}"
            raise PackageError(msg) from e
        logger.debug(f"Saved {destination}")
        self.path = destination
        return destination
