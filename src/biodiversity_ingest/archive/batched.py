"""Bounded-memory join for archives too large to hold in memory.

All core and extension rows are first loaded into a single-file SQLite
database, one table per data file, each indexed on its key column. Batches
of core records are then read in ascending id order. For every batch, the
batch's smallest and largest core id bound one parameterized range query per
extension table, so no extension table is ever scanned beyond the current
batch's key range.

Usage:
    with BatchedArchive(archive_dir, batch_size=5000) as archive:
        for batch in archive:
            for record_id, record in batch:
                ...
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
from collections import defaultdict
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from tqdm import tqdm

from biodiversity_ingest.archive.joiner import (
    Record,
    attach_extension_rows,
    iter_core_rows,
    iter_extension_rows,
    warn_core_field_collisions,
)
from biodiversity_ingest.archive.manifest import ArchiveManifest, FileSpec, parse_manifest
from biodiversity_ingest.errors import BatchedJoinError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5000

CORE_TABLE = "core"

Batch = list[tuple[str, Record]]

# Statement templates; table names are generated here, never taken from input
CREATE_CORE_SQL = f"CREATE TABLE {CORE_TABLE} (id TEXT PRIMARY KEY, json TEXT NOT NULL)"
INSERT_CORE_SQL = f"INSERT OR REPLACE INTO {CORE_TABLE} (id, json) VALUES (?, ?)"
COUNT_CORE_SQL = f"SELECT COUNT(id) FROM {CORE_TABLE}"
CORE_WINDOW_SQL = f"SELECT id, json FROM {CORE_TABLE} WHERE id > ? ORDER BY id LIMIT ?"
CREATE_EXTENSION_SQL = "CREATE TABLE {table} (id TEXT NOT NULL, json TEXT NOT NULL)"
CREATE_EXTENSION_INDEX_SQL = "CREATE INDEX idx_{table}_id ON {table} (id)"
INSERT_EXTENSION_SQL = "INSERT INTO {table} (id, json) VALUES (?, ?)"
EXTENSION_RANGE_SQL = "SELECT id, json FROM {table} WHERE id BETWEEN ? AND ? ORDER BY id, rowid"


class BatchedArchive:
    """An extracted archive loaded into an embedded indexed store.

    Iterating yields batches of ``(id, record)`` pairs with extensions already
    attached. Records are identical to those built by
    :func:`~biodiversity_ingest.archive.joiner.build_joined_records`; only the
    order differs (ascending id instead of file order). Iteration can be
    restarted any number of times.

    Args:
        archive_dir: Directory containing meta.xml and the data files
        batch_size: Number of core records per batch
        db_path: Location of the SQLite file; a temporary file when omitted
        show_progress: Display tqdm progress bars while loading

    Raises:
        ArchiveParseError: If the manifest is missing or malformed
        BatchedJoinError: If loading rows into the store fails
    """

    def __init__(
        self,
        archive_dir: Path | str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        db_path: Path | str | None = None,
        show_progress: bool = False,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.archive_dir = Path(archive_dir)
        self.batch_size = batch_size
        self.show_progress = show_progress
        self.manifest: ArchiveManifest = parse_manifest(self.archive_dir)
        # (extension property name, table name) in manifest order
        self.extension_tables: list[tuple[str, str]] = [
            (ext.name, f"ext_{position}") for position, ext in enumerate(self.manifest.extensions)
        ]

        self._owns_db = db_path is None
        if db_path is None:
            fd, tmp = tempfile.mkstemp(prefix="dwca-", suffix=".sqlite")
            os.close(fd)
            db_path = tmp
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = sqlite3.connect(self.db_path)
        try:
            self._load()
        except sqlite3.Error as e:
            self.close()
            raise BatchedJoinError(f"Failed to load archive into embedded store: {e}") from e
        except Exception:
            self.close()
            raise

    # =========================================================================
    # Loading
    # =========================================================================

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise BatchedJoinError("Embedded store is closed")
        return self._conn

    def _load(self) -> None:
        conn = self.conn
        core = self.manifest.core
        conn.execute(CREATE_CORE_SQL)
        rows = tqdm(
            iter_core_rows(self.archive_dir, core),
            desc=core.location,
            unit=" rows",
            disable=not self.show_progress,
        )
        conn.executemany(INSERT_CORE_SQL, ((key, json.dumps(row)) for key, row in rows))
        conn.commit()

        warn_core_field_collisions(self.manifest)
        for (name, table), ext in zip(self.extension_tables, self.manifest.extensions, strict=True):
            self._load_extension(table, ext)
            logger.debug(f"Loaded extension {name} into {table}")

        logger.info(f"Loaded {len(self)} core records into embedded store {self.db_path}")

    def _load_extension(self, table: str, spec: FileSpec) -> None:
        conn = self.conn
        conn.execute(CREATE_EXTENSION_SQL.format(table=table))
        conn.execute(CREATE_EXTENSION_INDEX_SQL.format(table=table))
        rows = tqdm(
            iter_extension_rows(self.archive_dir, spec),
            desc=spec.location,
            unit=" rows",
            disable=not self.show_progress,
        )
        conn.executemany(
            INSERT_EXTENSION_SQL.format(table=table),
            ((key, json.dumps(row)) for key, row in rows if key),
        )
        conn.commit()

    # =========================================================================
    # Querying
    # =========================================================================

    def __len__(self) -> int:
        """Number of core records in the store."""
        try:
            row = self.conn.execute(COUNT_CORE_SQL).fetchone()
        except sqlite3.Error as e:
            raise BatchedJoinError(f"Failed to count core records: {e}") from e
        return int(row[0])

    def _extension_rows_in_range(self, table: str, min_id: str, max_id: str) -> dict[str, list[Record]]:
        grouped: dict[str, list[Record]] = defaultdict(list)
        for key, payload in self.conn.execute(EXTENSION_RANGE_SQL.format(table=table), (min_id, max_id)):
            grouped[key].append(json.loads(payload))
        return grouped

    def fetch_batch(self, after_id: str) -> Batch:
        """Fetch the next batch of joined records with ids greater than ``after_id``.

        Args:
            after_id: Exclusive lower bound; use an empty string for the first batch

        Returns:
            Up to ``batch_size`` records in ascending id order; empty when exhausted

        Raises:
            BatchedJoinError: If a query against the store fails
        """
        try:
            core_rows = self.conn.execute(CORE_WINDOW_SQL, (after_id, self.batch_size)).fetchall()
            if not core_rows:
                return []
            min_id, max_id = core_rows[0][0], core_rows[-1][0]
            extension_rows = [
                (name, self._extension_rows_in_range(table, min_id, max_id)) for name, table in self.extension_tables
            ]
        except sqlite3.Error as e:
            raise BatchedJoinError(f"Batch query after id {after_id!r} failed: {e}") from e

        batch: Batch = []
        for key, payload in core_rows:
            record: Record = json.loads(payload)
            for name, grouped in extension_rows:
                attached = grouped.get(key)
                if attached:
                    attach_extension_rows(record, name, attached)
            batch.append((key, record))
        return batch

    def __iter__(self) -> Iterator[Batch]:
        after_id = ""
        while True:
            batch = self.fetch_batch(after_id)
            if not batch:
                return
            yield batch
            after_id = batch[-1][0]

    def iter_records(self) -> Iterator[tuple[str, Record]]:
        """Iterate over all joined records, one at a time."""
        for batch in self:
            yield from batch

    # =========================================================================
    # Cleanup
    # =========================================================================

    def close(self) -> None:
        """Close the store and delete it if it is a temporary file."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        if self._owns_db and self.db_path.exists():
            self.db_path.unlink()

    def __enter__(self) -> BatchedArchive:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
