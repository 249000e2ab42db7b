"""Darwin Core Archive manifest (meta.xml) parsing.

The manifest names one core data file and zero or more extension files, and
maps each column position to a Darwin Core term. Column positions are what
the parser relies on; term names only label the parsed values.

Example meta.xml::

    <archive xmlns="http://rs.tdwg.org/dwc/text/">
      <core rowType="http://rs.tdwg.org/dwc/terms/Taxon">
        <files><location>taxon.txt</location></files>
        <id index="0"/>
        <field index="1" term="http://rs.tdwg.org/dwc/terms/scientificName"/>
      </core>
      <extension rowType="http://rs.gbif.org/terms/1.0/VernacularName">
        <files><location>vernacularname.txt</location></files>
        <coreid index="0"/>
        <field index="1" term="http://rs.tdwg.org/dwc/terms/vernacularName"/>
      </extension>
    </archive>
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path

from biodiversity_ingest.errors import ArchiveParseError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "meta.xml"

# Marker placed in a field list at the position of the record key column
KEY_MARKER = "INDEX"


def _local_name(tag: str) -> str:
    """Strip an ElementTree ``{namespace}`` prefix from a tag."""
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _child(element: ET.Element, name: str) -> ET.Element | None:
    found = _children(element, name)
    return found[0] if found else None


def term_name(term: str) -> str:
    """Return the short field name for a term URI (its last path segment).

    >>> term_name("http://rs.tdwg.org/dwc/terms/scientificName")
    'scientificName'
    """
    return term.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class FileSpec:
    """One data file described by the manifest.

    Attributes:
        location: Path of the data file relative to the archive root
        fields: Field name per column position; None for undeclared columns
        key_index: Column holding the record id (core) or core id (extension)
        is_core: True for the core file
        row_type: The declared rowType URI, if any
        key_term: Term also declared on the key column (e.g. taxonID), if any
    """

    location: str
    fields: list[str | None]
    key_index: int
    is_core: bool = False
    row_type: str | None = None
    key_term: str | None = None

    @property
    def name(self) -> str:
        """Extension name: the file basename without its extension."""
        return Path(self.location).name.split(".")[0]

    def named_columns(self) -> list[tuple[int, str]]:
        """Return (position, field name) for every declared non-key column."""
        return [
            (index, name)
            for index, name in enumerate(self.fields)
            if name is not None and name != KEY_MARKER
        ]


@dataclass
class ArchiveManifest:
    """The parsed manifest: a core file plus its extensions."""

    core: FileSpec
    extensions: list[FileSpec] = field(default_factory=list)


def _parse_file_spec(element: ET.Element, is_core: bool) -> FileSpec:
    kind = "core" if is_core else "extension"

    files = _child(element, "files")
    location_el = _child(files, "location") if files is not None else None
    location = (location_el.text or "").strip() if location_el is not None else ""
    if not location:
        raise ArchiveParseError(f"{kind} entry in manifest has no file location")

    key_el = _child(element, "id" if is_core else "coreid")
    if key_el is None:
        # Some publishers use <id> in extensions too
        key_el = _child(element, "coreid" if is_core else "id")
    if key_el is None or key_el.get("index") is None:
        raise ArchiveParseError(f"{kind} entry '{location}' has no key column")
    try:
        key_index = int(key_el.get("index", ""))
    except ValueError as e:
        raise ArchiveParseError(f"{kind} entry '{location}' has a non-numeric key index") from e

    columns: dict[int, str] = {}
    for field_el in _children(element, "field"):
        index = field_el.get("index")
        term = field_el.get("term")
        if index is None or not term:
            # Constant-valued fields (default=...) have no column
            continue
        try:
            columns[int(index)] = term_name(term)
        except ValueError:
            logger.warning(f"Skipping field with non-numeric index {index!r} in '{location}'")

    width = max([key_index, *columns]) + 1
    fields: list[str | None] = [None] * width
    fields[key_index] = KEY_MARKER
    for index, name in columns.items():
        if index == key_index:
            # The key column keeps the marker; the term is still populated
            # from it by the row parser.
            continue
        fields[index] = name

    spec = FileSpec(
        location=location,
        fields=fields,
        key_index=key_index,
        is_core=is_core,
        row_type=element.get("rowType"),
        key_term=columns.get(key_index),
    )
    return spec


def parse_manifest_text(text: str | bytes) -> ArchiveManifest:
    """Parse manifest XML content.

    Raises:
        ArchiveParseError: If the XML is malformed or has no core entry
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ArchiveParseError(f"Malformed archive manifest: {e}") from e

    core_el = _child(root, "core")
    if core_el is None:
        raise ArchiveParseError("Archive manifest has no core file")

    manifest = ArchiveManifest(
        core=_parse_file_spec(core_el, is_core=True),
        extensions=[_parse_file_spec(ext, is_core=False) for ext in _children(root, "extension")],
    )
    logger.debug(
        f"Manifest core={manifest.core.location} extensions={[ext.location for ext in manifest.extensions]}"
    )
    return manifest


def parse_manifest(path: Path | str) -> ArchiveManifest:
    """Parse a meta.xml file, or the meta.xml inside an archive directory.

    Args:
        path: Path to meta.xml or to the extracted archive directory

    Returns:
        The parsed manifest

    Raises:
        ArchiveParseError: If the manifest is missing or malformed
    """
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    if not path.exists():
        raise ArchiveParseError(f"Archive manifest not found: {path}")
    return parse_manifest_text(path.read_bytes())
