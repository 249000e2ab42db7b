"""Per-run counters persisted as one metrics document per run.

Example document written to ``process_metrics``::

    {
        "process_type": "transform_taxa",
        "status": "completed",
        "started_at": ..., "completed_at": ..., "duration_seconds": 12.5,
        "records_processed": 1000, "records_inserted": 10,
        "records_updated": 990, "records_failed": 0,
        "error_summary": {"normalization:filter-by-taxon-rank": 42},
        "runner_id": "gh-123", "version": "abc123", "process_id": "..."
    }
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pymongo.collection import Collection

logger = logging.getLogger(__name__)

RUNTIME_ERROR_KEY = "runtime"


@dataclass
class MetricsSnapshot:
    """Point-in-time view of a run's counters."""

    process_type: str
    started_at: datetime
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_summary: dict[str, int] = field(default_factory=dict)
    resource_identifier: str | None = None
    runner_id: str | None = None
    version: str | None = None
    process_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProcessMetricsTracker:
    """Accumulates counters for one run and writes them exactly once.

    Counter updates are thread-safe so worker threads can report record
    failures directly.
    """

    def __init__(
        self,
        process_type: str,
        *,
        runner_id: str | None = None,
        version: str | None = None,
        resource_identifier: str | None = None,
        process_id: str | None = None,
    ):
        self.process_type = process_type
        self.runner_id = runner_id
        self.version = version
        self.resource_identifier = resource_identifier
        self.process_id = process_id or uuid.uuid4().hex
        self.started_at = datetime.now(UTC)
        self.processed = 0
        self.inserted = 0
        self.updated = 0
        self.failed = 0
        self.error_summary: dict[str, int] = {}
        self.finished = False
        self._lock = threading.Lock()

    def add_processed(self, count: int = 1) -> None:
        with self._lock:
            self.processed += count

    def add_inserted(self, count: int = 1) -> None:
        with self._lock:
            self.inserted += count

    def add_updated(self, count: int = 1) -> None:
        with self._lock:
            self.updated += count

    def add_failed(self, count: int = 1) -> None:
        with self._lock:
            self.failed += count

    def add_error(self, key: str, count: int = 1) -> None:
        """Increment the error histogram entry for ``key``."""
        with self._lock:
            self.error_summary[key] = self.error_summary.get(key, 0) + count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                process_type=self.process_type,
                started_at=self.started_at,
                records_processed=self.processed,
                records_inserted=self.inserted,
                records_updated=self.updated,
                records_failed=self.failed,
                error_summary=dict(self.error_summary),
                resource_identifier=self.resource_identifier,
                runner_id=self.runner_id,
                version=self.version,
                process_id=self.process_id,
            )

    def build_document(self, status: str, error: BaseException | str | None = None) -> dict[str, Any]:
        """Build the metrics document without persisting it."""
        completed_at = datetime.now(UTC)
        doc = self.snapshot().to_dict()
        doc["status"] = status
        doc["completed_at"] = completed_at
        doc["duration_seconds"] = (completed_at - self.started_at).total_seconds()
        if error is not None:
            doc["error_message"] = str(error)
        return doc

    def finish(
        self,
        collection: Collection[dict[str, Any]],
        status: str = "completed",
        error: BaseException | str | None = None,
    ) -> dict[str, Any]:
        """Persist the run's metrics document.

        Args:
            collection: The ``process_metrics`` collection
            status: ``completed`` or ``failed``
            error: The failure, recorded under the ``runtime`` error key

        Returns:
            The inserted document

        Raises:
            RuntimeError: If called more than once
        """
        if self.finished:
            raise RuntimeError("ProcessMetricsTracker.finish called more than once")
        self.finished = True
        if status == "failed":
            self.add_error(RUNTIME_ERROR_KEY)
        doc = self.build_document(status, error)
        collection.insert_one(doc)
        logger.info(
            f"{self.process_type} {status}: processed={doc['records_processed']} "
            f"inserted={doc['records_inserted']} updated={doc['records_updated']} "
            f"failed={doc['records_failed']}"
        )
        return doc
