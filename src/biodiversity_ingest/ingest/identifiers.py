"""Deterministic document ids for raw records.

Re-ingesting the same logical record must produce the same ``_id`` so the
write overwrites instead of duplicating.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Any

from biodiversity_ingest.errors import IdentifierError

WHITESPACE_PATTERN = re.compile(r"\s+")

# Prefixes keep flora and fauna taxon ids from colliding
TAXON_ID_PREFIXES = {"fauna": "A", "flora": "P"}

# Used, in order, when an occurrence has no occurrenceID
OCCURRENCE_FALLBACK_FIELDS = ("catalogNumber", "recordNumber", "eventDate", "locality", "recordedBy")


def _normalize(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    normalized = str(value).strip()
    return normalized or None


def _sanitize(segment: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", segment).strip()


def build_taxon_id(taxon_id: Any, source: str | None = None) -> str:
    """Build the id of a taxon record.

    Args:
        taxon_id: The record's taxonID
        source: ``flora`` or ``fauna``; selects the id prefix

    Returns:
        The prefixed, whitespace-collapsed id

    Raises:
        IdentifierError: If taxonID is missing or blank

    >>> build_taxon_id(" 12  34 ", "flora")
    'P12 34'
    """
    normalized = _normalize(taxon_id)
    if not normalized:
        raise IdentifierError("Cannot build taxon id: taxonID is missing or empty")
    return TAXON_ID_PREFIXES.get(source or "", "") + _sanitize(normalized)


def build_occurrence_id(record: dict[str, Any], provider_id: Any) -> str:
    """Build the id of an occurrence record.

    Uses ``occurrenceID::providerId`` when the record has an occurrenceID;
    otherwise hashes the provider id with the fallback fields.

    Raises:
        IdentifierError: If the provider id is blank, or the record has no
            occurrenceID and no fallback field
    """
    provider = _sanitize(_normalize(provider_id) or "")
    if not provider:
        raise IdentifierError("Cannot build occurrence id: provider id is required")

    occurrence_id = _normalize(record.get("occurrenceID"))
    if occurrence_id:
        return f"{_sanitize(occurrence_id)}::{provider}"

    fallback = [value for value in (_normalize(record.get(name)) for name in OCCURRENCE_FALLBACK_FIELDS) if value]
    if not fallback:
        raise IdentifierError("Cannot build occurrence id: occurrenceID and all fallback fields are empty")

    digest = hashlib.sha1("|".join([provider, *fallback]).encode("utf-8")).hexdigest()
    return f"hash::{provider}::{digest}"
