"""Streaming join of an extracted Darwin Core Archive into records.

Each data file is read line by line; no file is ever loaded whole. Core rows
become one record each, keyed by their id column. Extension rows are attached
to their core record under a list named after the extension file.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tqdm import tqdm

from biodiversity_ingest.archive.manifest import ArchiveManifest, FileSpec, parse_manifest
from biodiversity_ingest.errors import ArchiveParseError

logger = logging.getLogger(__name__)

Record = dict[str, Any]


def iter_data_lines(path: Path | str) -> Iterator[str]:
    """Yield the data lines of a tab-delimited file.

    The first line is a header and is always skipped. A final line without a
    trailing newline is still yielded. Blank lines are dropped.

    Args:
        path: Path to the data file

    Yields:
        Each data line with its line terminator removed

    Raises:
        ArchiveParseError: If the file does not exist
    """
    path = Path(path)
    if not path.is_file():
        raise ArchiveParseError(f"Data file listed in manifest is missing: {path.name}")
    with open(path, encoding="utf-8", errors="replace", newline="") as f:
        header = next(f, None)
        if header is None:
            return
        for line in f:
            line = line.rstrip("\r\n")
            if line:
                yield line


def decode_cell(value: str) -> Any:
    """Decode a cell that looks like a JSON object, else return it unchanged."""
    if value.startswith("{"):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def is_blank_extension_row(values: list[str], spec: FileSpec) -> bool:
    """True if every column except the core id column is empty."""
    return all(not value for index, value in enumerate(values) if index != spec.key_index)


def parse_row(line: str, spec: FileSpec, decode_json: bool = False) -> tuple[str, Record]:
    """Split one data line into its key and a field mapping.

    Empty cells and columns past the end of a short line are left out of the
    mapping, so malformed lines degrade instead of failing.

    Args:
        line: Raw data line without terminator
        spec: The file spec describing the columns
        decode_json: JSON-decode cells that start with ``{``

    Returns:
        Tuple of (key, fields). The key is an empty string when missing.
    """
    values = line.split("\t")
    key = values[spec.key_index] if spec.key_index < len(values) else ""
    row: Record = {}
    if spec.key_term and key:
        row[spec.key_term] = key
    for index, name in spec.named_columns():
        if index < len(values) and values[index]:
            row[name] = decode_cell(values[index]) if decode_json else values[index]
    return key, row


def iter_core_rows(archive_dir: Path, spec: FileSpec) -> Iterator[tuple[str, Record]]:
    """Yield (id, fields) for every core row that has an id."""
    for line in iter_data_lines(archive_dir / spec.location):
        key, row = parse_row(line, spec)
        if key:
            yield key, row


def iter_extension_rows(archive_dir: Path, spec: FileSpec) -> Iterator[tuple[str, Record]]:
    """Yield (core id, fields) for every non-blank extension row."""
    for line in iter_data_lines(archive_dir / spec.location):
        values = line.split("\t")
        if is_blank_extension_row(values, spec):
            continue
        key, row = parse_row(line, spec, decode_json=True)
        yield key, row


def warn_core_field_collisions(manifest: ArchiveManifest) -> list[str]:
    """Log and return extension names that are also core field names.

    The extension rows take the property in the joined record.
    """
    core_fields = {name for _, name in manifest.core.named_columns()}
    if manifest.core.key_term:
        core_fields.add(manifest.core.key_term)
    collisions = list(dict.fromkeys(ext.name for ext in manifest.extensions if ext.name in core_fields))
    for name in collisions:
        logger.warning(f"Extension {name} shares its name with a core field; extension rows replace the core value")
    return collisions


def attach_extension_rows(record: Record, name: str, rows: list[Record]) -> None:
    """Append extension rows under ``name``, replacing a core value of that name."""
    attached = record.get(name)
    if not isinstance(attached, list):
        attached = record[name] = []
    attached.extend(rows)


def count_core_rows(archive_dir: Path | str) -> int:
    """Count the data lines of the core file without parsing them."""
    archive_dir = Path(archive_dir)
    manifest = parse_manifest(archive_dir)
    return sum(1 for _ in iter_data_lines(archive_dir / manifest.core.location))


@dataclass
class JoinResult:
    """Output of an in-memory join.

    Attributes:
        manifest: The parsed archive manifest
        records: Joined records keyed by core id, in core file order
        orphan_counts: Per-extension count of rows whose core id was unknown
    """

    manifest: ArchiveManifest
    records: dict[str, Record] = field(default_factory=dict)
    orphan_counts: dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def total_orphans(self) -> int:
        return sum(self.orphan_counts.values())

    def iter_records(self) -> Iterator[tuple[str, Record]]:
        yield from self.records.items()


def build_joined_records(archive_dir: Path | str, show_progress: bool = False) -> JoinResult:
    """Join the core file and all extensions of an extracted archive.

    Args:
        archive_dir: Directory containing meta.xml and the data files
        show_progress: Display tqdm progress bars per file

    Returns:
        JoinResult with records keyed by core id

    Raises:
        ArchiveParseError: If the manifest is missing or malformed
    """
    archive_dir = Path(archive_dir)
    manifest = parse_manifest(archive_dir)
    result = JoinResult(manifest=manifest)

    core_rows = iter_core_rows(archive_dir, manifest.core)
    for key, row in tqdm(core_rows, desc=manifest.core.location, unit=" rows", disable=not show_progress):
        result.records[key] = row
    logger.info(f"Loaded {len(result.records)} core records from {manifest.core.location}")

    warn_core_field_collisions(manifest)
    for ext in manifest.extensions:
        orphans = 0
        attached = 0
        ext_rows = iter_extension_rows(archive_dir, ext)
        for key, row in tqdm(ext_rows, desc=ext.location, unit=" rows", disable=not show_progress):
            record = result.records.get(key)
            if record is None:
                orphans += 1
                continue
            attach_extension_rows(record, ext.name, [row])
            attached += 1
        if orphans:
            result.orphan_counts[ext.name] = orphans
            logger.warning(f"Extension {ext.name}: dropped {orphans} rows with unknown core id")
        logger.debug(f"Extension {ext.name}: attached {attached} rows")

    return result
