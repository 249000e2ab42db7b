"""Link occurrences to normalized taxa and split collector names."""

from __future__ import annotations

import importlib
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from biodiversity_ingest.transform.common import normalize_name_key, text

if TYPE_CHECKING:
    from pymongo.collection import Collection

logger = logging.getLogger(__name__)

TAXON_PROJECTION = {"_id": 1, "scientificName": 1, "canonicalName": 1, "flatScientificName": 1, "kingdom": 1}

COLLECTOR_SEPARATOR_PATTERN = re.compile(r"[;,]")

CollectorParser = Callable[[str], list[str] | None]


@dataclass(frozen=True)
class TaxonSummary:
    id: str
    scientific_name: str | None = None
    canonical_name: str | None = None
    flat_scientific_name: str | None = None
    kingdom: str | None = None

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> TaxonSummary:
        return cls(
            id=doc["_id"],
            scientific_name=text(doc.get("scientificName")),
            canonical_name=text(doc.get("canonicalName")),
            flat_scientific_name=text(doc.get("flatScientificName")),
            kingdom=text(doc.get("kingdom")),
        )


class TaxonMatcher:
    """Normalized taxa held in memory, keyed by id and by flattened name."""

    def __init__(self, taxa: Iterable[TaxonSummary] = ()):
        self.by_id: dict[str, TaxonSummary] = {}
        self.by_flat_name: dict[str, TaxonSummary] = {}
        self.by_canonical_name: dict[str, TaxonSummary] = {}
        self.by_scientific_name: dict[str, TaxonSummary] = {}
        for taxon in taxa:
            self.add(taxon)

    @classmethod
    def from_collection(cls, collection: Collection[dict[str, Any]]) -> TaxonMatcher:
        matcher = cls(TaxonSummary.from_document(doc) for doc in collection.find({}, TAXON_PROJECTION))
        logger.info(f"Loaded {len(matcher)} taxa for occurrence matching")
        return matcher

    def __len__(self) -> int:
        return len(self.by_id)

    def add(self, taxon: TaxonSummary) -> None:
        self.by_id[taxon.id] = taxon
        if taxon.flat_scientific_name:
            self.by_flat_name[taxon.flat_scientific_name.lower()] = taxon
        for table, name in (
            (self.by_canonical_name, taxon.canonical_name),
            (self.by_scientific_name, taxon.scientific_name),
        ):
            key = normalize_name_key(name)
            if key:
                table[key] = taxon

    def match(self, doc: dict[str, Any]) -> TaxonSummary | None:
        """Match by taxonID or acceptedNameUsageID, then by name."""
        for name in ("taxonID", "acceptedNameUsageID"):
            candidate = text(doc.get(name))
            if candidate and candidate in self.by_id:
                return self.by_id[candidate]

        keys: list[str] = []
        flat = text(doc.get("flatScientificName"))
        if flat:
            keys.append(flat.lower())
        for name in ("canonicalName", "scientificName"):
            key = normalize_name_key(doc.get(name))
            if key:
                keys.append(key)

        for key in keys:
            taxon = (
                self.by_flat_name.get(key) or self.by_canonical_name.get(key) or self.by_scientific_name.get(key)
            )
            if taxon:
                return taxon
        return None


def split_collectors(value: str) -> list[str]:
    """Split a ``recordedBy`` value on commas and semicolons.

    >>> split_collectors("Silva, J.; Souza, M.")
    ['Silva', 'J.', 'Souza', 'M.']
    """
    return [part.strip() for part in COLLECTOR_SEPARATOR_PATTERN.split(value) if part.strip()]


def load_collector_parser(spec: str | None) -> CollectorParser:
    """Load a collector parser from a ``module:function`` path.

    Falls back to :func:`split_collectors` when no path is given or the path
    cannot be loaded.
    """
    if not spec:
        return split_collectors
    module_name, _, attribute = spec.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        logger.warning(f"Could not import collector parser {spec}: {e}")
        return split_collectors
    parser = getattr(module, attribute or "parse", None)
    if not callable(parser):
        logger.warning(f"Collector parser {spec} is not callable; using the default")
        return split_collectors
    return parser  # type: ignore[no-any-return]


@dataclass
class OccurrenceEnrichmentResult:
    taxon_matched: bool
    parsing_status: str


def parse_collectors(recorded_by: Any, parser: CollectorParser) -> tuple[list[str] | None, str]:
    """Return ``(names, status)``; status is success, failed, or skipped."""
    value = text(recorded_by)
    if not value:
        return None, "skipped"
    try:
        parsed = parser(value)
    except Exception as e:
        logger.warning(f"Collector parser failed on {value!r}: {e}")
        return None, "failed"
    names = list(dict.fromkeys(name.strip() for name in parsed or [] if isinstance(name, str) and name.strip()))
    return (names, "success") if names else (None, "failed")


def enrich_occurrence(
    doc: dict[str, Any],
    matcher: TaxonMatcher,
    parser: CollectorParser = split_collectors,
) -> OccurrenceEnrichmentResult:
    """Copy the matched taxon's names onto the occurrence and parse collectors."""
    taxon = matcher.match(doc)
    if taxon is not None:
        doc["taxonID"] = taxon.id
        if taxon.scientific_name:
            doc["scientificName"] = taxon.scientific_name
        if taxon.canonical_name:
            doc["canonicalName"] = taxon.canonical_name
        if taxon.flat_scientific_name:
            doc["flatScientificName"] = taxon.flat_scientific_name
        if taxon.kingdom and not isinstance(doc.get("kingdom"), str):
            doc["kingdom"] = taxon.kingdom

    names, status = parse_collectors(doc.get("recordedBy"), parser)
    if names:
        doc["collectors"] = names
    if status != "skipped":
        doc["parsingStatus"] = status
    return OccurrenceEnrichmentResult(taxon_matched=taxon is not None, parsing_status=status)
