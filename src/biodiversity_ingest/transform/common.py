"""Helpers shared by the taxa and occurrence transform steps."""

from __future__ import annotations

import copy
import math
import re
from typing import Any

from biodiversity_ingest.transform.pipeline import Document

NON_ALNUM_PATTERN = re.compile(r"[^a-zA-Z0-9]")

# Name parts joined, in this order, into the canonical name
CANONICAL_NAME_FIELDS = (
    "genus",
    "genericName",
    "subgenus",
    "infragenericEpithet",
    "specificEpithet",
    "infraspecificEpithet",
    "cultivarEpiteth",
)


def build_flat_name(value: str) -> str:
    """Strip every non-alphanumeric character and lowercase.

    >>> build_flat_name("Quercus alba L.")
    'quercusalbal'
    """
    return NON_ALNUM_PATTERN.sub("", value).lower()


def normalize_name_key(value: Any) -> str | None:
    """Return the lookup key for a name, or None if it is not a usable string."""
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return build_flat_name(stripped) or None


def text(value: Any) -> str | None:
    """Return a stripped string, or None for non-strings and blanks."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def validate_and_clone(raw: Document) -> Document | None:
    """Reject documents without a string ``_id``; deep-copy the rest."""
    doc_id = raw.get("_id") if raw else None
    if not isinstance(doc_id, str) or not doc_id:
        return None
    return copy.deepcopy(raw)


def build_canonical_name(doc: Document) -> Document:
    parts = [text(doc.get(name)) for name in CANONICAL_NAME_FIELDS]
    canonical = " ".join(part for part in parts if part)
    if canonical:
        doc["canonicalName"] = canonical
    return doc


def build_flat_scientific_name(doc: Document) -> Document:
    """Set ``flatScientificName`` from scientificName, falling back to canonicalName."""
    source = text(doc.get("scientificName")) or text(doc.get("canonicalName"))
    if source:
        flat = build_flat_name(source)
        if flat:
            doc["flatScientificName"] = flat
    return doc


def to_number(value: Any) -> float | int | None:
    """Parse ints, floats, and numeric strings; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        stripped = value.strip()
        try:
            return int(stripped)
        except ValueError:
            pass
        try:
            parsed = float(stripped)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None
