"""Darwin Core Archive parsing and joining."""

from biodiversity_ingest.archive.batched import BatchedArchive
from biodiversity_ingest.archive.eml import ProviderMetadata, parse_eml, read_provider_metadata
from biodiversity_ingest.archive.joiner import JoinResult, build_joined_records, iter_data_lines, parse_row
from biodiversity_ingest.archive.manifest import (
    KEY_MARKER,
    ArchiveManifest,
    FileSpec,
    parse_manifest,
    parse_manifest_text,
)

__all__ = [
    # Manifest
    "KEY_MARKER",
    "ArchiveManifest",
    "FileSpec",
    "parse_manifest",
    "parse_manifest_text",
    # Streaming join
    "JoinResult",
    "build_joined_records",
    "iter_data_lines",
    "parse_row",
    # Batched join
    "BatchedArchive",
    # Metadata
    "ProviderMetadata",
    "parse_eml",
    "read_provider_metadata",
]
