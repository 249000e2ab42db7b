"""Turn joined archive records into raw documents."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from biodiversity_ingest.archive.eml import ProviderMetadata
from biodiversity_ingest.clients.ipt import ProviderSource
from biodiversity_ingest.ingest.identifiers import build_occurrence_id, build_taxon_id
from biodiversity_ingest.store.documents import RawDocument

TAXA_DOMAIN = "taxa"
OCCURRENCES_DOMAIN = "occurrences"
DOMAINS = (TAXA_DOMAIN, OCCURRENCES_DOMAIN)


def taxon_source_for(kingdom: str | None) -> str:
    """Return ``fauna`` for Animalia providers, ``flora`` for everything else."""
    return "fauna" if kingdom and "animalia" in kingdom.lower() else "flora"


@dataclass(frozen=True)
class IngestContext:
    """What every raw document of one ingestion run shares."""

    domain: str
    source: ProviderSource
    metadata: ProviderMetadata
    archive_url: str
    ingested_at: datetime

    @property
    def provider_id(self) -> str:
        return self.metadata.id

    @property
    def provider_version(self) -> str:
        return self.metadata.version


def build_raw_document(record_id: str, record: dict[str, Any], context: IngestContext) -> RawDocument:
    """Wrap a joined record with its ingestion metadata.

    Args:
        record_id: The record's core id within the archive
        record: Joined record; copied, never mutated
        context: Shared metadata of the run

    Raises:
        IdentifierError: If no deterministic id can be built
        ValueError: If the context domain is unknown
    """
    if context.domain == TAXA_DOMAIN:
        doc_id = build_taxon_id(record.get("taxonID") or record_id, taxon_source_for(context.source.kingdom))
    elif context.domain == OCCURRENCES_DOMAIN:
        doc_id = build_occurrence_id(record, context.provider_id)
    else:
        raise ValueError(f"Unknown domain: {context.domain}")

    return RawDocument(
        id=doc_id,
        record_id=record_id,
        provider_id=context.provider_id,
        provider_version=context.provider_version,
        source_url=context.archive_url,
        ingested_at=context.ingested_at,
        collection_type=context.domain,
        repository=context.source.repository,
        tag=context.source.tag,
        kingdom=context.source.kingdom or None,
        data=copy.deepcopy(record),
    )
