"""Raw ingestion of provider archives."""

from biodiversity_ingest.ingest.identifiers import build_occurrence_id, build_taxon_id
from biodiversity_ingest.ingest.raw import (
    DOMAINS,
    OCCURRENCES_DOMAIN,
    TAXA_DOMAIN,
    IngestContext,
    build_raw_document,
)
from biodiversity_ingest.ingest.runner import (
    IngestOutcome,
    IngestSummary,
    ingest_provider,
    ingest_providers,
)
from biodiversity_ingest.ingest.versions import (
    OfflineHosts,
    PendingProvider,
    VersionCheckResult,
    check_provider_versions,
)

__all__ = [
    # Identifiers
    "build_occurrence_id",
    "build_taxon_id",
    # Raw documents
    "DOMAINS",
    "OCCURRENCES_DOMAIN",
    "TAXA_DOMAIN",
    "IngestContext",
    "build_raw_document",
    # Runs
    "IngestOutcome",
    "IngestSummary",
    "ingest_provider",
    "ingest_providers",
    # Version checks
    "OfflineHosts",
    "PendingProvider",
    "VersionCheckResult",
    "check_provider_versions",
]
