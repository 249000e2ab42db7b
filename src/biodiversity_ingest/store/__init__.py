"""MongoDB persistence: locks, metrics, bulk writes, and document shapes."""

from biodiversity_ingest.store.bulk_writer import BulkWriter, document_size, write_with_halving
from biodiversity_ingest.store.documents import OriginalReference, ProcessingStatus, RawDocument
from biodiversity_ingest.store.locks import LockDocument, LockStatus, ProcessLockManager
from biodiversity_ingest.store.metrics import MetricsSnapshot, ProcessMetricsTracker

__all__ = [
    # Bulk writes
    "BulkWriter",
    "document_size",
    "write_with_halving",
    # Documents
    "OriginalReference",
    "ProcessingStatus",
    "RawDocument",
    # Locks
    "LockDocument",
    "LockStatus",
    "ProcessLockManager",
    # Metrics
    "MetricsSnapshot",
    "ProcessMetricsTracker",
]
