"""Raw ingestion of provider archives into MongoDB.

Each provider resource is ingested under its own lock
(``ingest_<domain>:<providerId>``) so concurrent runners never write the same
provider twice. Raw documents are replaced wholesale; documents left over
from an older provider version are deleted once the new version is written.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pymongo.errors import OperationFailure, PyMongoError
from tqdm import tqdm

from biodiversity_ingest.archive.fetch import open_archive
from biodiversity_ingest.archive.joiner import Record
from biodiversity_ingest.clients.ipt import IptClient, ProviderSource
from biodiversity_ingest.config import (
    DEFAULT_ARCHIVE_BATCH_SIZE,
    DEFAULT_BATCHED_THRESHOLD,
    DEFAULT_CONCURRENCY_LIMIT,
)
from biodiversity_ingest.errors import (
    ErrorCategory,
    IdentifierError,
    IngestError,
    LockAcquisitionError,
    classify_exception,
)
from biodiversity_ingest.ingest.raw import OCCURRENCES_DOMAIN, TAXA_DOMAIN, IngestContext, build_raw_document
from biodiversity_ingest.ingest.versions import OfflineHosts, PendingProvider, check_provider_versions
from biodiversity_ingest.store.bulk_writer import RAW_MAX_OPERATIONS, BulkWriter
from biodiversity_ingest.store.collections import (
    PROCESS_METRICS_COLLECTION,
    PROVIDERS_COLLECTION,
    RAW_COLLECTIONS,
)
from biodiversity_ingest.store.documents import PROVIDER_ID_KEY, PROVIDER_VERSION_KEY
from biodiversity_ingest.store.metrics import ProcessMetricsTracker

if TYPE_CHECKING:
    from pymongo.collection import Collection
    from pymongo.database import Database

    from biodiversity_ingest.store.locks import ProcessLockManager

logger = logging.getLogger(__name__)

DETERMINISTIC_ID_ERROR = "deterministicId"

IndexDefinition = tuple[str, list[tuple[str, int]]]

RAW_INDEXES: dict[str, list[IndexDefinition]] = {
    TAXA_DOMAIN: [
        ("iptId", [("iptId", 1)]),
        ("taxonID", [("taxonID", 1)]),
        ("scientificName", [("scientificName", 1)]),
    ],
    OCCURRENCES_DOMAIN: [
        ("iptId", [("iptId", 1)]),
        ("occurrenceID", [("occurrenceID", 1)]),
        ("scientificName", [("scientificName", 1)]),
    ],
}
PROVIDER_INDEXES: list[IndexDefinition] = [
    ("tag", [("tag", 1)]),
    ("ipt", [("ipt", 1)]),
]


class IngestOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    LOCKED = "locked"
    OFFLINE = "offline"
    FAILED = "failed"


@dataclass
class IngestSummary:
    """Per-provider outcomes of one ingestion invocation."""

    outcomes: dict[str, IngestOutcome] = field(default_factory=dict)
    offline_hosts: set[str] = field(default_factory=set)

    def labels(self, outcome: IngestOutcome) -> list[str]:
        return [label for label, value in self.outcomes.items() if value is outcome]

    @property
    def succeeded(self) -> list[str]:
        return self.labels(IngestOutcome.SUCCEEDED)

    @property
    def skipped(self) -> list[str]:
        return self.labels(IngestOutcome.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self.labels(IngestOutcome.FAILED)

    @property
    def ok(self) -> bool:
        """True if no provider failed outright; offline and retired providers are not failures."""
        return not self.failed


def ensure_indexes(collection: Collection[dict[str, Any]], indexes: list[IndexDefinition]) -> None:
    """Create named indexes, tolerating ones that already exist with other options."""
    for name, keys in indexes:
        try:
            collection.create_index(keys, name=name)
        except OperationFailure as e:
            logger.warning(f"Could not create index {name} on {collection.name}: {e}")


def write_raw_records(
    records: Iterable[tuple[str, Record]],
    context: IngestContext,
    writer: BulkWriter,
    metrics: ProcessMetricsTracker,
    total: int | None = None,
    show_progress: bool = False,
) -> int:
    """Build and queue a raw document for every joined record.

    Returns:
        Number of documents queued
    """
    queued = 0
    for record_id, record in tqdm(
        records, total=total, desc=context.source.label, unit=" records", disable=not show_progress
    ):
        metrics.add_processed()
        try:
            document = build_raw_document(record_id, record, context)
        except IdentifierError as e:
            logger.debug(f"{context.source.label}: skipping record {record_id!r}: {e}")
            metrics.add_error(DETERMINISTIC_ID_ERROR)
            metrics.add_failed()
            continue
        if writer.add_replace(document.to_document()):
            queued += 1
    writer.flush()
    return queued


def delete_superseded(raw_collection: Collection[dict[str, Any]], provider_id: str, version: str) -> int:
    """Delete raw documents of ``provider_id`` written for any other version."""
    result = raw_collection.delete_many({PROVIDER_ID_KEY: provider_id, PROVIDER_VERSION_KEY: {"$ne": version}})
    if result.deleted_count:
        logger.info(f"Deleted {result.deleted_count} superseded raw documents of {provider_id}")
    return result.deleted_count


def record_provider(
    providers_collection: Collection[dict[str, Any]],
    context: IngestContext,
    raw_collection_name: str,
) -> None:
    metadata = context.metadata.model_dump(exclude={"id"})
    providers_collection.update_one(
        {"_id": context.provider_id},
        {
            "$set": {
                **metadata,
                "ipt": context.source.repository,
                "tag": context.source.tag,
                "kingdom": context.source.kingdom,
                "set": context.domain,
                "collection": raw_collection_name,
                "lastIngestedAt": context.ingested_at,
                "sourceUrl": context.source.url,
            }
        },
        upsert=True,
    )


def ingest_provider(
    db: Database[dict[str, Any]],
    client: IptClient,
    locks: ProcessLockManager,
    pending: PendingProvider,
    *,
    domain: str,
    runner_id: str | None = None,
    version: str | None = None,
    offline: OfflineHosts | None = None,
    batched: bool | None = None,
    batched_threshold: int = DEFAULT_BATCHED_THRESHOLD,
    batch_size: int = DEFAULT_ARCHIVE_BATCH_SIZE,
    force_lock: bool = False,
    show_progress: bool = False,
) -> IngestOutcome:
    """Download one provider archive and write its records as raw documents.

    Never raises for provider-level failures: the outcome says what happened
    and one metrics document is written for the run regardless.

    Args:
        db: Target database
        client: IPT client used to download the archive
        locks: Lock manager guarding per-provider exclusivity
        pending: Provider source and its freshly fetched metadata
        domain: ``taxa`` or ``occurrences``
        runner_id: Identity recorded on the lock and metrics
        version: Ingestion code version recorded on the metrics
        offline: Hosts found offline; updated on transport failures
        batched: Force the join mode; None chooses by archive size
        batched_threshold: Core row count above which the batched join is used
        batch_size: Records per batch in batched mode
        force_lock: Take the provider lock even if another runner holds it
        show_progress: Display tqdm progress bars

    Returns:
        The provider's IngestOutcome
    """
    source, metadata = pending.source, pending.metadata
    raw_collection = db[RAW_COLLECTIONS[domain]]
    archive_url = client.archive_url(source)
    context = IngestContext(
        domain=domain,
        source=source,
        metadata=metadata,
        archive_url=archive_url,
        ingested_at=datetime.now(UTC),
    )
    metrics = ProcessMetricsTracker(
        f"ingest_{domain}",
        runner_id=runner_id,
        version=version,
        resource_identifier=metadata.id,
    )

    outcome = IngestOutcome.SUCCEEDED
    status = "completed"
    error: BaseException | None = None
    try:
        with locks.hold(f"ingest_{domain}:{metadata.id}", runner_id=runner_id, force=force_lock):
            logger.info(f"Ingesting {source.label} version {metadata.version} from {archive_url}")
            with open_archive(
                client,
                archive_url,
                batched=batched,
                batched_threshold=batched_threshold,
                batch_size=batch_size,
                show_progress=show_progress,
            ) as archive:
                writer = BulkWriter(raw_collection, metrics, max_operations=RAW_MAX_OPERATIONS, halve_on_failure=True)
                queued = write_raw_records(
                    archive.iter_records(), context, writer, metrics, total=archive.total, show_progress=show_progress
                )
            delete_superseded(raw_collection, metadata.id, metadata.version)
            record_provider(db[PROVIDERS_COLLECTION], context, raw_collection.name)
            logger.info(f"{source.label}: wrote {queued} raw documents")
    except LockAcquisitionError as e:
        logger.warning(f"{source.label}: {e}")
        outcome, status, error = IngestOutcome.LOCKED, "skipped", e
    except (IngestError, PyMongoError) as e:
        category = classify_exception(e)
        error = e
        if category is ErrorCategory.NOT_FOUND:
            logger.info(f"Resource {source.label} no longer exists (404); skipping")
            outcome, status = IngestOutcome.SKIPPED, "skipped"
        elif category is ErrorCategory.TRANSPORT:
            if offline is not None:
                offline.add(source.base_url)
            logger.error(f"{source.label}: transport failure: {e}")
            outcome, status = IngestOutcome.OFFLINE, "failed"
        else:
            logger.error(f"{source.label}: ingestion failed: {e}")
            outcome, status = IngestOutcome.FAILED, "failed"
    except Exception as e:
        logger.exception(f"{source.label}: unexpected error during ingestion: {e}")
        outcome, status, error = IngestOutcome.FAILED, "failed", e
    finally:
        metrics.finish(db[PROCESS_METRICS_COLLECTION], status=status, error=error)
    return outcome


def ingest_providers(
    db: Database[dict[str, Any]],
    client: IptClient,
    locks: ProcessLockManager,
    sources: list[ProviderSource],
    *,
    domain: str,
    runner_id: str | None = None,
    version: str | None = None,
    max_workers: int = DEFAULT_CONCURRENCY_LIMIT,
    **ingest_options: Any,
) -> IngestSummary:
    """Check every provider's version, then ingest the ones that changed.

    Version checks run concurrently; ingestion runs one provider at a time
    in source order. Providers on a host that went offline are skipped.

    Args:
        db: Target database
        client: IPT client
        locks: Lock manager
        sources: Provider resources, in ingestion order
        domain: ``taxa`` or ``occurrences``
        runner_id: Identity recorded on locks and metrics
        version: Ingestion code version recorded on metrics
        max_workers: Concurrent metadata requests during the version check
        **ingest_options: Passed to :func:`ingest_provider`

    Returns:
        IngestSummary with an outcome per provider label
    """
    raw_collection = db[RAW_COLLECTIONS[domain]]
    providers_collection = db[PROVIDERS_COLLECTION]
    ensure_indexes(raw_collection, RAW_INDEXES[domain])
    ensure_indexes(providers_collection, PROVIDER_INDEXES)

    offline = OfflineHosts()
    checked = check_provider_versions(sources, client, providers_collection, max_workers=max_workers, offline=offline)

    summary = IngestSummary()
    for source in checked.retired:
        summary.outcomes[source.label] = IngestOutcome.SKIPPED

    if not checked.pending:
        logger.info("No provider resources required ingestion updates")

    for pending in checked.pending:
        label = pending.source.label
        if pending.source.base_url in offline:
            logger.info(f"Skipping {label}: {pending.source.base_url} is offline")
            summary.outcomes[label] = IngestOutcome.OFFLINE
            continue
        summary.outcomes[label] = ingest_provider(
            db,
            client,
            locks,
            pending,
            domain=domain,
            runner_id=runner_id,
            version=version,
            offline=offline,
            **ingest_options,
        )

    summary.offline_hosts = offline.snapshot()
    if summary.offline_hosts:
        logger.warning(f"{len(summary.offline_hosts)} IPT server(s) were offline: {sorted(summary.offline_hosts)}")
    return summary
