"""Size-aware batching of upserts into MongoDB.

Operations are buffered and flushed with one unordered ``bulk_write`` when
either the operation count or the total BSON size of the buffered documents
reaches its threshold. Both thresholds sit below MongoDB's 16 MiB limits.
A single document at or above the hard per-document limit is never sent; it
is counted under ``docTooLarge`` instead.

Usage:
    with BulkWriter(collection, metrics, max_operations=5000) as writer:
        for doc in documents:
            writer.add_upsert(doc)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import bson
from pymongo import ReplaceOne, UpdateOne
from pymongo.errors import PyMongoError

from biodiversity_ingest.errors import WriteError

if TYPE_CHECKING:
    from pymongo.collection import Collection

    from biodiversity_ingest.store.metrics import ProcessMetricsTracker

logger = logging.getLogger(__name__)

MiB = 1024 * 1024

HARD_DOC_SIZE_LIMIT = 15 * MiB
DEFAULT_MAX_BYTES = 12 * MiB
RAW_MAX_OPERATIONS = 500
NORMALIZED_MAX_OPERATIONS = 5000

DOC_TOO_LARGE_ERROR = "docTooLarge"
BULK_WRITE_ERROR = "bulkWrite"

WriteOperation = UpdateOne | ReplaceOne


def document_size(doc: dict[str, Any]) -> int:
    """Return the BSON-encoded size of a document in bytes."""
    return len(bson.encode(doc))


def write_with_halving(
    collection: Collection[dict[str, Any]],
    operations: list[WriteOperation],
) -> tuple[int, int]:
    """Write a batch, splitting it in halves on failure.

    Each half is retried the same way until it succeeds. A failing batch of
    a single operation raises. Upserts are idempotent, so operations already
    applied by a failed unordered write are safe to send again.

    Args:
        collection: Target collection
        operations: Upsert or replace operations

    Returns:
        Tuple of (inserted, updated) counts

    Raises:
        pymongo.errors.PyMongoError: If a single operation cannot be written
    """
    if not operations:
        return 0, 0
    try:
        result = collection.bulk_write(operations, ordered=False)
        return result.upserted_count, result.modified_count
    except PyMongoError as e:
        if len(operations) == 1:
            raise
        mid = len(operations) // 2
        logger.warning(
            f"Bulk write of {len(operations)} operations failed ({e}); retrying as {mid} + {len(operations) - mid}"
        )
        first = write_with_halving(collection, operations[:mid])
        second = write_with_halving(collection, operations[mid:])
        return first[0] + second[0], first[1] + second[1]


class BulkWriter:
    """Buffer upserts and flush them in size-bounded batches.

    Args:
        collection: Target collection
        metrics: Tracker receiving inserted/updated/failed counts and errors
        max_operations: Flush once this many operations are buffered
        max_bytes: Flush before the buffered BSON size would reach this
        hard_doc_limit: Documents this large or larger are dropped
        halve_on_failure: Retry failed flushes with :func:`write_with_halving`
        dry_run: Count and size operations but never write them
    """

    def __init__(
        self,
        collection: Collection[dict[str, Any]],
        metrics: ProcessMetricsTracker,
        *,
        max_operations: int = NORMALIZED_MAX_OPERATIONS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        hard_doc_limit: int = HARD_DOC_SIZE_LIMIT,
        halve_on_failure: bool = False,
        dry_run: bool = False,
    ):
        self.collection = collection
        self.metrics = metrics
        self.max_operations = max_operations
        self.max_bytes = max_bytes
        self.hard_doc_limit = hard_doc_limit
        self.halve_on_failure = halve_on_failure
        self.dry_run = dry_run
        self._operations: list[WriteOperation] = []
        self._bytes = 0
        self.flush_count = 0

    @property
    def pending(self) -> int:
        return len(self._operations)

    def add_upsert(self, doc: dict[str, Any], unset: Iterable[str] = ()) -> bool:
        """Queue ``$set`` of every field of ``doc`` onto the document with its ``_id``.

        Args:
            doc: Document to upsert
            unset: Fields to remove from the stored document when ``doc`` lacks them

        Returns:
            False if the document was dropped for its size
        """
        fields = {key: value for key, value in doc.items() if key != "_id"}
        update: dict[str, Any] = {"$set": fields}
        cleared = {key: "" for key in unset if key not in doc}
        if cleared:
            update["$unset"] = cleared
        return self._add(UpdateOne({"_id": doc["_id"]}, update, upsert=True), doc)

    def add_replace(self, doc: dict[str, Any]) -> bool:
        """Queue a full replacement of the document with ``doc["_id"]``.

        Returns:
            False if the document was dropped for its size
        """
        return self._add(ReplaceOne({"_id": doc["_id"]}, doc, upsert=True), doc)

    def _add(self, operation: WriteOperation, doc: dict[str, Any]) -> bool:
        size = document_size(doc)
        if size >= self.hard_doc_limit:
            logger.warning(f"Dropping document {doc.get('_id')!r}: {size} bytes exceeds {self.hard_doc_limit}")
            self.metrics.add_error(DOC_TOO_LARGE_ERROR)
            self.metrics.add_failed(1)
            return False

        if self._operations and (
            len(self._operations) >= self.max_operations or self._bytes + size >= self.max_bytes
        ):
            self.flush()

        self._operations.append(operation)
        self._bytes += size
        return True

    def flush(self) -> tuple[int, int]:
        """Write all buffered operations.

        Returns:
            Tuple of (inserted, updated) counts for this flush

        Raises:
            WriteError: If the write fails; the buffer is cleared either way
        """
        if not self._operations:
            return 0, 0
        operations = self._operations
        self._operations = []
        self._bytes = 0
        self.flush_count += 1

        if self.dry_run:
            logger.debug(f"Dry run: skipping write of {len(operations)} operations")
            return 0, 0

        try:
            if self.halve_on_failure:
                inserted, updated = write_with_halving(self.collection, operations)
            else:
                result = self.collection.bulk_write(operations, ordered=False)
                inserted, updated = result.upserted_count, result.modified_count
        except PyMongoError as e:
            self.metrics.add_error(BULK_WRITE_ERROR)
            self.metrics.add_failed(len(operations))
            raise WriteError(f"Bulk write of {len(operations)} operations failed: {e}") from e

        self.metrics.add_inserted(inserted)
        self.metrics.add_updated(updated)
        logger.debug(f"Flushed {len(operations)} operations: {inserted} inserted, {updated} updated")
        return inserted, updated

    def __enter__(self) -> BulkWriter:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self.flush()
