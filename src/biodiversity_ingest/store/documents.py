"""Shapes of the documents persisted by the pipelines.

Raw and normalized documents keep a small set of known fields the pipelines
read and write, plus an open ``data`` map holding every Darwin Core field as
published by the provider. Documents are stored flat: the known fields sit
beside the data fields under fixed keys, so a raw document can be split back
into its parts without loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Keys of the known fields in a stored raw document
RAW_ID_KEY = "_id"
RECORD_ID_KEY = "ipt_record_id"
PROVIDER_ID_KEY = "iptId"
PROVIDER_REPOSITORY_KEY = "ipt"
PROVIDER_TAG_KEY = "iptTag"
PROVIDER_KINGDOM_KEY = "iptKingdom"
PROVIDER_VERSION_KEY = "iptVersion"
INGESTED_AT_KEY = "rawIngestedAt"
SOURCE_URL_KEY = "rawSourceUrl"
COLLECTION_TYPE_KEY = "collection_type"
PROCESSING_STATUS_KEY = "processing_status"

# Keys added by the transform pipeline
TRANSFORM_VERSION_KEY = "_transformVersion"
TRANSFORMED_AT_KEY = "_transformedAt"
ORIGINAL_REFERENCE_KEY = "original_reference"

RAW_METADATA_KEYS = frozenset(
    {
        RAW_ID_KEY,
        RECORD_ID_KEY,
        PROVIDER_ID_KEY,
        PROVIDER_REPOSITORY_KEY,
        PROVIDER_TAG_KEY,
        PROVIDER_KINGDOM_KEY,
        PROVIDER_VERSION_KEY,
        INGESTED_AT_KEY,
        SOURCE_URL_KEY,
        COLLECTION_TYPE_KEY,
        PROCESSING_STATUS_KEY,
    }
)


@dataclass
class ProcessingStatus:
    """Transform bookkeeping kept on each raw document."""

    is_processed: bool = False
    last_transform_attempt: datetime | None = None
    transform_error: str | None = None
    pipeline_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_processed": self.is_processed,
            "last_transform_attempt": self.last_transform_attempt,
            "transform_error": self.transform_error,
            "pipeline_version": self.pipeline_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProcessingStatus:
        data = data or {}
        return cls(
            is_processed=bool(data.get("is_processed", False)),
            last_transform_attempt=data.get("last_transform_attempt"),
            transform_error=data.get("transform_error"),
            pipeline_version=data.get("pipeline_version"),
        )


@dataclass
class RawDocument:
    """A joined archive record plus ingestion metadata.

    Attributes:
        id: Deterministic document id (``_id``)
        record_id: Provider-local record id (the archive core id)
        provider_id: Dataset id from the provider's EML ``packageId``
        provider_version: Dataset version from the provider's EML
        source_url: Archive URL the record was read from
        ingested_at: Start time of the ingestion run
        collection_type: ``taxa`` or ``occurrences``
        repository: Short name of the publishing IPT
        tag: IPT resource tag
        kingdom: Kingdom(s) declared for the resource
        processing_status: Transform bookkeeping
        data: Darwin Core fields and extension arrays, as published
    """

    id: str
    record_id: str
    provider_id: str
    provider_version: str
    source_url: str
    ingested_at: datetime
    collection_type: str
    repository: str | None = None
    tag: str | None = None
    kingdom: str | None = None
    processing_status: ProcessingStatus = field(default_factory=ProcessingStatus)
    data: dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        """Flatten into the stored form; known fields override data keys."""
        doc = {key: value for key, value in self.data.items() if key not in RAW_METADATA_KEYS}
        doc.update(
            {
                RAW_ID_KEY: self.id,
                RECORD_ID_KEY: self.record_id,
                PROVIDER_ID_KEY: self.provider_id,
                PROVIDER_REPOSITORY_KEY: self.repository,
                PROVIDER_TAG_KEY: self.tag,
                PROVIDER_KINGDOM_KEY: self.kingdom,
                PROVIDER_VERSION_KEY: self.provider_version,
                INGESTED_AT_KEY: self.ingested_at,
                SOURCE_URL_KEY: self.source_url,
                COLLECTION_TYPE_KEY: self.collection_type,
                PROCESSING_STATUS_KEY: self.processing_status.to_dict(),
            }
        )
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> RawDocument:
        return cls(
            id=doc[RAW_ID_KEY],
            record_id=doc.get(RECORD_ID_KEY, ""),
            provider_id=doc.get(PROVIDER_ID_KEY, ""),
            provider_version=doc.get(PROVIDER_VERSION_KEY, ""),
            source_url=doc.get(SOURCE_URL_KEY, ""),
            ingested_at=doc.get(INGESTED_AT_KEY),  # type: ignore[arg-type]
            collection_type=doc.get(COLLECTION_TYPE_KEY, ""),
            repository=doc.get(PROVIDER_REPOSITORY_KEY),
            tag=doc.get(PROVIDER_TAG_KEY),
            kingdom=doc.get(PROVIDER_KINGDOM_KEY),
            processing_status=ProcessingStatus.from_dict(doc.get(PROCESSING_STATUS_KEY)),
            data={key: value for key, value in doc.items() if key not in RAW_METADATA_KEYS},
        )


@dataclass
class OriginalReference:
    """Back-reference from a normalized document to its raw source."""

    original_id: str
    provider_id: str | None = None
    record_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_id": self.original_id,
            PROVIDER_ID_KEY: self.provider_id,
            RECORD_ID_KEY: self.record_id,
        }

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> OriginalReference:
        return cls(
            original_id=raw[RAW_ID_KEY],
            provider_id=raw.get(PROVIDER_ID_KEY),
            record_id=raw.get(RECORD_ID_KEY),
        )
