"""Conservation facts and related names attached to normalized taxa."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from biodiversity_ingest.enrichment.index import (
    ConservationUnit,
    EnrichmentIndex,
    InvasiveStatus,
    ThreatStatus,
    collect_document_ids,
    collect_document_names,
)
from biodiversity_ingest.transform.common import text

if TYPE_CHECKING:
    from pymongo.collection import Collection

    from biodiversity_ingest.store.metrics import ProcessMetricsTracker

logger = logging.getLogger(__name__)

TAXON_ID_FIELDS = ("_id", "taxonID")
TAXON_NAME_FIELDS = ("canonicalName", "scientificName")

OTHERNAMES_UNRESOLVED_ERROR = "othernamesUnresolved"

THREAT_STATUS_FIELD = "threatStatus"
INVASIVE_STATUS_FIELD = "invasiveStatus"
CONSERVATION_UNITS_FIELD = "conservationUnits"
# Cleared from a stored taxon when a new run finds no match
ENRICHMENT_FIELDS = (THREAT_STATUS_FIELD, INVASIVE_STATUS_FIELD, CONSERVATION_UNITS_FIELD)


@dataclass
class EnrichmentResult:
    threats: list[ThreatStatus] = field(default_factory=list)
    invasives: list[InvasiveStatus] = field(default_factory=list)
    conservation_units: list[ConservationUnit] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return bool(self.threats or self.invasives or self.conservation_units)


def enrich_record(doc: dict[str, Any], index: EnrichmentIndex) -> EnrichmentResult:
    """Look a taxon up in every enrichment source by id and by name."""
    ids = collect_document_ids(doc, TAXON_ID_FIELDS)
    names = collect_document_names(doc, TAXON_NAME_FIELDS)
    return EnrichmentResult(
        threats=index.threats.match(ids, names),
        invasives=index.invasives.match(ids, names),
        conservation_units=index.conservation_units.match(ids, names),
    )


def apply_enrichment(doc: dict[str, Any], result: EnrichmentResult) -> dict[str, Any]:
    """Write matched facts onto the document; clear fields with no match.

    Only the first invasive match is kept.
    """
    if result.threats:
        doc[THREAT_STATUS_FIELD] = [threat.to_dict() for threat in result.threats]
    else:
        doc.pop(THREAT_STATUS_FIELD, None)

    invasive = next((entry for entry in result.invasives if entry.is_invasive), None)
    if invasive is not None:
        doc[INVASIVE_STATUS_FIELD] = invasive.to_dict()
    else:
        doc.pop(INVASIVE_STATUS_FIELD, None)

    if result.conservation_units:
        doc[CONSERVATION_UNITS_FIELD] = [unit.to_dict() for unit in result.conservation_units]
    else:
        doc.pop(CONSERVATION_UNITS_FIELD, None)
    return doc


def enrich_taxon(doc: dict[str, Any], index: EnrichmentIndex) -> EnrichmentResult:
    result = enrich_record(doc, index)
    apply_enrichment(doc, result)
    return result


def _id_prefix(doc: dict[str, Any]) -> str:
    """Source prefix of a taxon id, e.g. ``P`` for ``P123`` with taxonID ``123``."""
    doc_id, own = text(doc.get("_id")), text(doc.get("taxonID"))
    if doc_id and own and doc_id != own and doc_id.endswith(own):
        return doc_id[: -len(own)]
    return ""


class RelatedNameResolver:
    """Fills in the scientific names of a taxon's ``othernames``.

    Related taxa are looked up in the raw taxa collection by record id.
    Lookups are cached, including misses. Safe to share between worker
    threads.
    """

    def __init__(self, raw_collection: Collection[dict[str, Any]]):
        self.raw_collection = raw_collection
        self._cache: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def lookup(self, taxon_id: str, id_prefix: str = "") -> str | None:
        """Scientific name of a related taxon.

        The raw id ``id_prefix + taxon_id`` is tried first so that flora and
        fauna taxa sharing a taxonID resolve within their own source.
        """
        key = f"{id_prefix}{taxon_id}"
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        found = None
        if id_prefix:
            found = self.raw_collection.find_one({"_id": key}, {"scientificName": 1})
        if found is None:
            found = self.raw_collection.find_one(
                {"$or": [{"_id": taxon_id}, {"taxonID": taxon_id}]},
                {"scientificName": 1},
            )
        name = text(found.get("scientificName")) if found else None

        with self._lock:
            self._cache[key] = name
        return name

    def resolve(self, doc: dict[str, Any], metrics: ProcessMetricsTracker | None = None) -> int:
        """Resolve every unnamed ``othernames`` entry of ``doc`` in place.

        Entries that cannot be resolved keep a None name; each is logged and
        counted under ``othernamesUnresolved``.

        Returns:
            Number of entries left unresolved
        """
        entries = doc.get("othernames")
        if not isinstance(entries, list):
            return 0

        id_prefix = _id_prefix(doc)
        unresolved = 0
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("scientificName"):
                continue
            taxon_id = text(entry.get("taxonID"))
            name = self.lookup(taxon_id, id_prefix) if taxon_id else None
            if name:
                entry["scientificName"] = name
                continue
            unresolved += 1
            logger.warning(f"Related taxon {taxon_id!r} of {doc.get('_id')} not found; name left empty")

        if unresolved and metrics is not None:
            metrics.add_error(OTHERNAMES_UNRESOLVED_ERROR, unresolved)
        return unresolved
