"""In-memory lookup tables over the conservation reference collections.

Reference collections (threatened species lists, invasive species, protected
area catalogues) are small and heterogeneous. Each is read once per run;
every document is filed under all of its candidate identifiers and all of its
normalized names, so enriching a record is a handful of dict lookups instead
of a database query per record.

Matching is by identity of the stored fact: a fact reachable through both an
id and a name is returned once.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from biodiversity_ingest.store.collections import (
    CONSERVATION_UNITS_COLLECTION,
    FAUNA_THREATENED_COLLECTION,
    FUNGI_THREATENED_COLLECTION,
    INVASIVE_COLLECTION,
    PLANTAE_THREATENED_COLLECTION,
)
from biodiversity_ingest.transform.common import normalize_name_key, text

if TYPE_CHECKING:
    from pymongo.database import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Candidate fields, in preference order, holding an identifier or a name
ID_FIELDS = ("_id", "taxonID", "taxonId", "taxon_id", "identifier", "id")
NAME_FIELDS = (
    "canonicalName",
    "scientificName",
    "scientificname",
    "nome",
    "nomeCientifico",
    "nome_cientifico",
    "nomeCientífico",
    "species",
    "especie",
    "speciesScientificName",
)
# Fields that already hold a flattened name key
FLAT_NAME_FIELDS = ("flatScientificName", "flatScientificname")

THREAT_CATEGORY_FIELDS = (
    "category",
    "categoria",
    "categoryNational",
    "categoria_nacional",
    "Categoria de Risco",
    "threatStatus",
    "status",
)
INVASIVE_NOTE_FIELDS = ("notes", "observacao")
CONSERVATION_UNIT_NAME_FIELDS = ("ucName", "nomeUC", "nome_uc", "nome", "name")

DEFAULT_THREAT_SOURCES = (
    FUNGI_THREATENED_COLLECTION,
    PLANTAE_THREATENED_COLLECTION,
    FAUNA_THREATENED_COLLECTION,
)
DEFAULT_INVASIVE_SOURCES = (INVASIVE_COLLECTION,)


# =============================================================================
# Facts
# =============================================================================
# eq=False keeps hashing by identity, which is what de-duplication relies on.


@dataclass(eq=False)
class ThreatStatus:
    source: str
    category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "category": self.category}


@dataclass(eq=False)
class InvasiveStatus:
    source: str
    is_invasive: bool = True
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "isInvasive": self.is_invasive, "notes": self.notes}


@dataclass(eq=False)
class ConservationUnit:
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"ucName": self.name}


# =============================================================================
# Key extraction
# =============================================================================


def collect_document_ids(doc: dict[str, Any], fields: Iterable[str] = ID_FIELDS) -> list[str]:
    """Return the distinct non-empty string ids found in ``fields``, in order."""
    ids: dict[str, None] = {}
    for name in fields:
        value = text(doc.get(name))
        if value:
            ids[value] = None
    return list(ids)


def collect_document_names(doc: dict[str, Any], fields: Iterable[str] = NAME_FIELDS) -> list[str]:
    """Return the distinct normalized name keys of a document, in order."""
    names: dict[str, None] = {}
    for name in fields:
        key = normalize_name_key(doc.get(name))
        if key:
            names[key] = None
    for name in FLAT_NAME_FIELDS:
        value = text(doc.get(name))
        if value:
            names[value.lower()] = None
    return list(names)


def _first_text(doc: dict[str, Any], fields: Iterable[str]) -> str | None:
    for name in fields:
        value = text(doc.get(name))
        if value:
            return value
    return None


# =============================================================================
# Lookup table
# =============================================================================


@dataclass
class IndexedLookup(Generic[T]):
    """Facts filed by identifier and by normalized name."""

    by_id: dict[str, list[T]] = field(default_factory=lambda: defaultdict(list))
    by_name: dict[str, list[T]] = field(default_factory=lambda: defaultdict(list))

    def add(self, ids: Iterable[str], names: Iterable[str], fact: T) -> None:
        for key in ids:
            if key:
                self.by_id[key].append(fact)
        for key in names:
            if key:
                self.by_name[key].append(fact)

    def match(self, ids: Iterable[str], names: Iterable[str]) -> list[T]:
        """Return every fact filed under any of the keys, each once.

        Id matches come first, then name matches, each in insertion order.
        """
        seen: set[int] = set()
        results: list[T] = []
        for table, keys in ((self.by_id, ids), (self.by_name, names)):
            for key in keys:
                for fact in table.get(key, ()):
                    if id(fact) in seen:
                        continue
                    seen.add(id(fact))
                    results.append(fact)
        return results

    def __len__(self) -> int:
        facts = {id(fact) for facts in (*self.by_id.values(), *self.by_name.values()) for fact in facts}
        return len(facts)


@dataclass
class EnrichmentIndex:
    """Lookup tables for all enrichment sources. Read-only once built."""

    threats: IndexedLookup[ThreatStatus] = field(default_factory=IndexedLookup)
    invasives: IndexedLookup[InvasiveStatus] = field(default_factory=IndexedLookup)
    conservation_units: IndexedLookup[ConservationUnit] = field(default_factory=IndexedLookup)

    # =========================================================================
    # Building
    # =========================================================================

    def add_threat_documents(self, source: str, docs: Iterable[dict[str, Any]]) -> int:
        count = 0
        for doc in docs:
            ids, names = collect_document_ids(doc), collect_document_names(doc)
            if not ids and not names:
                continue
            self.threats.add(ids, names, ThreatStatus(source, _first_text(doc, THREAT_CATEGORY_FIELDS)))
            count += 1
        return count

    def add_invasive_documents(self, source: str, docs: Iterable[dict[str, Any]]) -> int:
        count = 0
        for doc in docs:
            ids, names = collect_document_ids(doc), collect_document_names(doc)
            if not ids and not names:
                continue
            self.invasives.add(ids, names, InvasiveStatus(source, True, _first_text(doc, INVASIVE_NOTE_FIELDS)))
            count += 1
        return count

    def add_conservation_unit_documents(self, docs: Iterable[dict[str, Any]]) -> int:
        count = 0
        for doc in docs:
            unit_name = _first_text(doc, CONSERVATION_UNIT_NAME_FIELDS)
            if not unit_name:
                continue
            ids, names = collect_document_ids(doc), collect_document_names(doc)
            if not ids and not names:
                continue
            self.conservation_units.add(ids, names, ConservationUnit(unit_name))
            count += 1
        return count


def build_enrichment_index(
    db: Database[dict[str, Any]],
    threat_sources: Iterable[str] = DEFAULT_THREAT_SOURCES,
    invasive_sources: Iterable[str] = DEFAULT_INVASIVE_SOURCES,
    conservation_source: str | None = CONSERVATION_UNITS_COLLECTION,
) -> EnrichmentIndex:
    """Read every reference collection once and build the lookup tables.

    Args:
        db: Database holding the reference collections
        threat_sources: Threatened-species collections; the name is the fact source
        invasive_sources: Invasive-species collections
        conservation_source: Protected-area collection, or None to skip

    Returns:
        The populated index
    """
    index = EnrichmentIndex()
    for source in threat_sources:
        count = index.add_threat_documents(source, db[source].find({}))
        logger.info(f"Indexed {count} threat entries from {source}")
    for source in invasive_sources:
        count = index.add_invasive_documents(source, db[source].find({}))
        logger.info(f"Indexed {count} invasive entries from {source}")
    if conservation_source:
        count = index.add_conservation_unit_documents(db[conservation_source].find({}))
        logger.info(f"Indexed {count} conservation unit entries from {conservation_source}")
    return index
