"""Resumable transform of raw documents into normalized collections.

A run holds the ``transform_<domain>`` lock, streams every raw document not
already transformed at the current version, and for each batch:

1. runs the normalization pipeline and enrichment on a thread pool
2. upserts the results, in input order, through the bulk writer
3. records the outcome on each raw document's ``processing_status``

Re-running with the same version processes nothing: ids already stamped with
that version in the target collection, and raw documents already attempted
at that version, are skipped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pymongo import UpdateOne
from tqdm import tqdm

from biodiversity_ingest.config import DEFAULT_TRANSFORM_BATCH_SIZE, DEFAULT_TRANSFORM_WORKERS
from biodiversity_ingest.enrichment.index import build_enrichment_index
from biodiversity_ingest.enrichment.occurrences import TaxonMatcher, enrich_occurrence, load_collector_parser
from biodiversity_ingest.enrichment.taxa import ENRICHMENT_FIELDS, RelatedNameResolver, enrich_taxon
from biodiversity_ingest.store.bulk_writer import DOC_TOO_LARGE_ERROR, NORMALIZED_MAX_OPERATIONS, BulkWriter
from biodiversity_ingest.store.collections import (
    OCCURRENCES_COLLECTION,
    PROCESS_METRICS_COLLECTION,
    RAW_OCCURRENCES_COLLECTION,
    RAW_TAXA_COLLECTION,
    TAXA_COLLECTION,
)
from biodiversity_ingest.store.documents import (
    ORIGINAL_REFERENCE_KEY,
    PROCESSING_STATUS_KEY,
    TRANSFORM_VERSION_KEY,
    TRANSFORMED_AT_KEY,
    OriginalReference,
    ProcessingStatus,
)
from biodiversity_ingest.store.metrics import MetricsSnapshot, ProcessMetricsTracker
from biodiversity_ingest.transform.occurrences import build_occurrence_pipeline
from biodiversity_ingest.transform.pipeline import Document, TransformPipeline, execute_pipeline
from biodiversity_ingest.transform.taxa import build_taxa_pipeline

if TYPE_CHECKING:
    from pymongo.collection import Collection
    from pymongo.database import Database

    from biodiversity_ingest.store.locks import ProcessLockManager

logger = logging.getLogger(__name__)

Enricher = Callable[[Document, ProcessMetricsTracker], None]

INCONSISTENT_ID_ERROR = "inconsistentId"
ENRICHMENT_ERROR = "enrichment"
VERSION_INDEX = [("_id", 1), (TRANSFORM_VERSION_KEY, 1)]
PIPELINE_VERSION_FIELD = f"{PROCESSING_STATUS_KEY}.pipeline_version"


@dataclass(frozen=True)
class TransformJob:
    """Where a domain's records come from and go, and how they are normalized."""

    domain: str
    raw_collection: str
    target_collection: str
    build_pipeline: Callable[[], TransformPipeline]

    @property
    def lock_resource(self) -> str:
        return f"transform_{self.domain}"


TRANSFORM_JOBS = {
    "taxa": TransformJob("taxa", RAW_TAXA_COLLECTION, TAXA_COLLECTION, build_taxa_pipeline),
    "occurrences": TransformJob(
        "occurrences", RAW_OCCURRENCES_COLLECTION, OCCURRENCES_COLLECTION, build_occurrence_pipeline
    ),
}


@dataclass
class RecordOutcome:
    raw_id: Any
    document: Document | None = None
    error: str | None = None


# =============================================================================
# Enrichment wiring
# =============================================================================


def build_taxa_enricher(db: Database[dict[str, Any]]) -> Enricher:
    index = build_enrichment_index(db)
    resolver = RelatedNameResolver(db[RAW_TAXA_COLLECTION])

    def enrich(doc: Document, metrics: ProcessMetricsTracker) -> None:
        enrich_taxon(doc, index)
        resolver.resolve(doc, metrics)

    return enrich


def build_occurrence_enricher(db: Database[dict[str, Any]], collector_parser: str | None = None) -> Enricher:
    matcher = TaxonMatcher.from_collection(db[TAXA_COLLECTION])
    parser = load_collector_parser(collector_parser)

    def enrich(doc: Document, metrics: ProcessMetricsTracker) -> None:
        enrich_occurrence(doc, matcher, parser)

    return enrich


def build_enricher(db: Database[dict[str, Any]], domain: str, collector_parser: str | None = None) -> Enricher:
    if domain == "taxa":
        return build_taxa_enricher(db)
    return build_occurrence_enricher(db, collector_parser)


# =============================================================================
# Per-record transform
# =============================================================================


def transform_record(
    raw: Document,
    pipeline: TransformPipeline,
    enricher: Enricher | None,
    version: str,
    metrics: ProcessMetricsTracker,
) -> RecordOutcome:
    """Normalize, enrich, and stamp one raw document.

    Record-level failures are counted on ``metrics`` and reported in the
    outcome; they never raise.
    """
    raw_id = raw.get("_id")
    metrics.add_processed()

    result = execute_pipeline(pipeline, raw)
    if not result.success or result.document is None:
        key = f"normalization:{result.failed_at}" if result.failed_at else "normalization"
        if result.error is not None:
            logger.warning(f"Normalization of {raw_id!r} failed at {result.failed_at}: {result.error}")
        metrics.add_failed()
        metrics.add_error(key)
        return RecordOutcome(raw_id, error=key)

    doc = result.document
    if doc.get("_id") != raw_id:
        logger.warning(f"Normalized document id {doc.get('_id')!r} differs from raw id {raw_id!r}")
        metrics.add_failed()
        metrics.add_error(INCONSISTENT_ID_ERROR)
        return RecordOutcome(raw_id, error=INCONSISTENT_ID_ERROR)

    if enricher is not None:
        try:
            enricher(doc, metrics)
        except Exception as e:
            logger.warning(f"Enrichment of {raw_id!r} failed: {e}")
            metrics.add_failed()
            metrics.add_error(ENRICHMENT_ERROR)
            return RecordOutcome(raw_id, error=ENRICHMENT_ERROR)

    doc.pop(PROCESSING_STATUS_KEY, None)
    doc[ORIGINAL_REFERENCE_KEY] = OriginalReference.from_raw(raw).to_dict()
    doc[TRANSFORM_VERSION_KEY] = version
    doc[TRANSFORMED_AT_KEY] = datetime.now(UTC)
    return RecordOutcome(raw_id, document=doc)


def mark_raw_documents(
    raw_collection: Collection[dict[str, Any]],
    outcomes: Iterable[RecordOutcome],
    version: str,
) -> int:
    """Record each outcome on its raw document's ``processing_status``."""
    attempted_at = datetime.now(UTC)
    operations = [
        UpdateOne(
            {"_id": outcome.raw_id},
            {
                "$set": {
                    PROCESSING_STATUS_KEY: ProcessingStatus(
                        is_processed=outcome.error is None,
                        last_transform_attempt=attempted_at,
                        transform_error=outcome.error,
                        pipeline_version=version,
                    ).to_dict()
                }
            },
        )
        for outcome in outcomes
    ]
    if not operations:
        return 0
    return raw_collection.bulk_write(operations, ordered=False).modified_count


# =============================================================================
# Run
# =============================================================================


def load_transformed_ids(target: Collection[dict[str, Any]], version: str) -> set[Any]:
    """Ids already transformed at ``version``."""
    return {doc["_id"] for doc in target.find({TRANSFORM_VERSION_KEY: version}, {"_id": 1})}


def iter_batches(docs: Iterable[Document], size: int) -> Iterator[list[Document]]:
    batch: list[Document] = []
    for doc in docs:
        batch.append(doc)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def process_batch(
    batch: list[Document],
    pool: ThreadPoolExecutor,
    pipeline: TransformPipeline,
    enricher: Enricher | None,
    version: str,
    metrics: ProcessMetricsTracker,
    writer: BulkWriter,
) -> list[RecordOutcome]:
    """Transform a batch concurrently, then queue the results in input order."""
    outcomes = list(pool.map(lambda raw: transform_record(raw, pipeline, enricher, version, metrics), batch))
    # Stale enrichment is cleared only when this run enriched
    unset = ENRICHMENT_FIELDS if enricher is not None else ()
    for outcome in outcomes:
        if outcome.document is not None and not writer.add_upsert(outcome.document, unset=unset):
            outcome.document = None
            outcome.error = DOC_TOO_LARGE_ERROR
    writer.flush()
    return outcomes


def _execute(
    db: Database[dict[str, Any]],
    job: TransformJob,
    metrics: ProcessMetricsTracker,
    *,
    version: str,
    dry_run: bool,
    batch_size: int,
    workers: int,
    enricher: Enricher | None,
    show_progress: bool,
    heartbeat: Callable[[], object] | None = None,
) -> None:
    raw_collection = db[job.raw_collection]
    target = db[job.target_collection]
    if not dry_run:
        target.create_index(VERSION_INDEX)

    total = raw_collection.count_documents({})
    current = target.count_documents({TRANSFORM_VERSION_KEY: version})
    logger.info(f"{job.domain}: {total} raw documents, {current} already at version {version}")

    pending_filter = {PIPELINE_VERSION_FIELD: {"$ne": version}}
    pending = raw_collection.count_documents(pending_filter)
    if pending == 0:
        logger.info(f"{job.domain}: nothing to transform")
        return

    skip_ids = load_transformed_ids(target, version)
    pipeline = job.build_pipeline()
    writer = BulkWriter(target, metrics, max_operations=NORMALIZED_MAX_OPERATIONS, dry_run=dry_run)
    raw_docs = (doc for doc in raw_collection.find(pending_filter).sort("_id", 1) if doc["_id"] not in skip_ids)

    with tqdm(total=pending, desc=f"Transform {job.domain}", unit=" docs", disable=not show_progress) as progress:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for batch in iter_batches(raw_docs, batch_size):
                outcomes = process_batch(batch, pool, pipeline, enricher, version, metrics, writer)
                if not dry_run:
                    mark_raw_documents(raw_collection, outcomes, version)
                if heartbeat is not None:
                    heartbeat()
                progress.update(len(batch))


def run_transform(
    db: Database[dict[str, Any]],
    domain: str,
    locks: ProcessLockManager,
    *,
    version: str,
    runner_id: str | None = None,
    force: bool = False,
    dry_run: bool = False,
    batch_size: int = DEFAULT_TRANSFORM_BATCH_SIZE,
    workers: int = DEFAULT_TRANSFORM_WORKERS,
    enricher: Enricher | None = None,
    enrich: bool = True,
    collector_parser: str | None = None,
    show_progress: bool = False,
) -> MetricsSnapshot:
    """Transform every pending raw document of ``domain``.

    Args:
        db: Database holding raw, normalized, and reference collections
        domain: ``taxa`` or ``occurrences``
        locks: Lock manager; the run holds ``transform_<domain>``
        version: Stamp written on every normalized document
        runner_id: Identity recorded on the lock and metrics
        force: Take the lock even if another runner holds it
        dry_run: Transform without writing documents, raw statuses, or metrics
        batch_size: Raw documents per batch
        workers: Threads transforming a batch
        enricher: Enrichment to apply; built from ``db`` when None
        enrich: Set to False to skip enrichment entirely
        collector_parser: ``module:function`` of a custom recordedBy parser
        show_progress: Display a tqdm progress bar

    Returns:
        Counters of the run

    Raises:
        KeyError: If ``domain`` is unknown
        LockAcquisitionError: If another runner holds the transform lock
        WriteError: If a bulk write fails
    """
    job = TRANSFORM_JOBS[domain]
    with locks.hold(job.lock_resource, runner_id=runner_id, force=force) as lock:
        metrics = ProcessMetricsTracker(
            job.lock_resource,
            runner_id=runner_id,
            version=version,
            resource_identifier=domain,
        )
        try:
            if enrich and enricher is None:
                enricher = build_enricher(db, domain, collector_parser)
            _execute(
                db,
                job,
                metrics,
                version=version,
                dry_run=dry_run,
                batch_size=batch_size,
                workers=workers,
                enricher=enricher if enrich else None,
                show_progress=show_progress,
                heartbeat=lambda: locks.refresh(job.lock_resource, lock.holder_id),
            )
        except BaseException as e:
            if not dry_run:
                metrics.finish(db[PROCESS_METRICS_COLLECTION], status="failed", error=e)
            raise
        snapshot = metrics.snapshot()
        if dry_run:
            logger.info(f"Dry run of {job.lock_resource}: {snapshot.to_dict()}")
        else:
            metrics.finish(db[PROCESS_METRICS_COLLECTION])
    return snapshot
