"""Enrichment of normalized records from reference collections."""

from biodiversity_ingest.enrichment.index import (
    ConservationUnit,
    EnrichmentIndex,
    IndexedLookup,
    InvasiveStatus,
    ThreatStatus,
    build_enrichment_index,
    collect_document_ids,
    collect_document_names,
)
from biodiversity_ingest.enrichment.occurrences import (
    TaxonMatcher,
    TaxonSummary,
    enrich_occurrence,
    load_collector_parser,
    split_collectors,
)
from biodiversity_ingest.enrichment.taxa import (
    EnrichmentResult,
    RelatedNameResolver,
    apply_enrichment,
    enrich_record,
    enrich_taxon,
)

__all__ = [
    # Index
    "ConservationUnit",
    "EnrichmentIndex",
    "IndexedLookup",
    "InvasiveStatus",
    "ThreatStatus",
    "build_enrichment_index",
    "collect_document_ids",
    "collect_document_names",
    # Taxa
    "EnrichmentResult",
    "RelatedNameResolver",
    "apply_enrichment",
    "enrich_record",
    "enrich_taxon",
    # Occurrences
    "TaxonMatcher",
    "TaxonSummary",
    "enrich_occurrence",
    "load_collector_parser",
    "split_collectors",
]
