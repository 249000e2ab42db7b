"""Tests for taxon and occurrence enrichment."""

from typing import Any
from unittest.mock import MagicMock

from biodiversity_ingest.enrichment import (
    EnrichmentIndex,
    IndexedLookup,
    RelatedNameResolver,
    TaxonMatcher,
    TaxonSummary,
    ThreatStatus,
    apply_enrichment,
    build_enrichment_index,
    collect_document_ids,
    collect_document_names,
    enrich_occurrence,
    enrich_record,
    enrich_taxon,
    load_collector_parser,
    split_collectors,
)
from biodiversity_ingest.enrichment.taxa import OTHERNAMES_UNRESOLVED_ERROR
from biodiversity_ingest.store.collections import (
    CONSERVATION_UNITS_COLLECTION,
    INVASIVE_COLLECTION,
    PLANTAE_THREATENED_COLLECTION,
    RAW_TAXA_COLLECTION,
    TAXA_COLLECTION,
)
from biodiversity_ingest.store.metrics import ProcessMetricsTracker


def seed_reference_collections(db: Any, insert_docs: Any) -> None:
    insert_docs(
        db[PLANTAE_THREATENED_COLLECTION],
        [
            {"_id": "X1", "canonicalName": "Quercus alba", "categoria": "EN"},
            {"_id": "X2", "nomeCientifico": "Pinus taeda", "category": "VU"},
            {"categoria": "LC"},
        ],
    )
    insert_docs(
        db[INVASIVE_COLLECTION],
        [{"_id": "inv-1", "scientificName": "Pinus taeda L.", "flatScientificName": "pinustaeda", "notes": "Pinus"}],
    )
    insert_docs(
        db[CONSERVATION_UNITS_COLLECTION],
        [
            {"_id": "uc-1", "nomeUC": "Parque Nacional da Tijuca", "scientificName": "Quercus alba"},
            {"_id": "uc-2", "scientificName": "Quercus alba"},
        ],
    )


class TestKeyExtraction:
    """Tests for id and name key extraction."""

    def test_ids_distinct_in_order(self) -> None:
        """Test that ids are stripped and de-duplicated."""
        assert collect_document_ids({"_id": "1", "taxonID": " 1 ", "id": "2", "identifier": ""}) == ["1", "2"]

    def test_names_flattened(self) -> None:
        """Test that names and flat name fields give the same key once."""
        doc = {"scientificName": "Quercus alba L.", "flatScientificName": "QUERCUSALBAL", "nome": "  "}
        assert collect_document_names(doc) == ["quercusalbal"]


class TestIndexedLookup:
    """Tests for IndexedLookup."""

    def test_fact_matched_once(self) -> None:
        """Test that a fact reachable by id and by name is returned once."""
        lookup: IndexedLookup[ThreatStatus] = IndexedLookup()
        fact = ThreatStatus("plantaeAmeacada", "EN")
        lookup.add(["X1"], ["quercusalba"], fact)

        assert lookup.match(["X1"], ["quercusalba"]) == [fact]
        assert len(lookup) == 1

    def test_equal_facts_kept_apart(self) -> None:
        """Test that distinct but equal-looking facts are both returned."""
        lookup: IndexedLookup[ThreatStatus] = IndexedLookup()
        first = ThreatStatus("a", "EN")
        second = ThreatStatus("a", "EN")
        lookup.add(["1"], [], first)
        lookup.add([], ["name"], second)

        assert lookup.match(["1"], ["name"]) == [first, second]

    def test_no_match(self) -> None:
        """Test that unknown keys match nothing."""
        assert IndexedLookup().match(["x"], ["y"]) == []


class TestBuildEnrichmentIndex:
    """Tests for build_enrichment_index."""

    def test_reads_every_source(self, db: Any, insert_docs: Any) -> None:
        """Test that threats, invasives, and conservation units are indexed."""
        seed_reference_collections(db, insert_docs)
        index = build_enrichment_index(db)

        assert len(index.threats) == 2
        assert len(index.invasives) == 1
        assert len(index.conservation_units) == 1

    def test_enrich_record(self, db: Any, insert_docs: Any) -> None:
        """Test lookups by id and by normalized name."""
        seed_reference_collections(db, insert_docs)
        index = build_enrichment_index(db)

        oak = enrich_record({"_id": "X1", "canonicalName": "Quercus alba"}, index)
        assert [t.to_dict() for t in oak.threats] == [{"source": PLANTAE_THREATENED_COLLECTION, "category": "EN"}]
        assert [u.name for u in oak.conservation_units] == ["Parque Nacional da Tijuca"]
        assert oak.invasives == []

        pine = enrich_record({"_id": "P2", "scientificName": "Pinus taeda"}, index)
        assert [t.category for t in pine.threats] == ["VU"]
        assert pine.invasives[0].notes == "Pinus"
        assert pine.matched

    def test_unmatched(self) -> None:
        """Test that an empty index matches nothing."""
        result = enrich_record({"_id": "1", "canonicalName": "Abies"}, EnrichmentIndex())
        assert not result.matched


class TestApplyEnrichment:
    """Tests for apply_enrichment and enrich_taxon."""

    def test_fields_written(self, db: Any, insert_docs: Any) -> None:
        """Test that matched facts are written in stored form."""
        seed_reference_collections(db, insert_docs)
        doc = {"_id": "P2", "canonicalName": "Pinus taeda"}

        enrich_taxon(doc, build_enrichment_index(db))

        assert doc["threatStatus"] == [{"source": PLANTAE_THREATENED_COLLECTION, "category": "VU"}]
        assert doc["invasiveStatus"] == {"source": INVASIVE_COLLECTION, "isInvasive": True, "notes": "Pinus"}
        assert "conservationUnits" not in doc

    def test_stale_fields_cleared(self) -> None:
        """Test that fields from an earlier run are removed when nothing matches."""
        doc = {"_id": "1", "threatStatus": ["old"], "invasiveStatus": {}, "conservationUnits": ["old"]}
        apply_enrichment(doc, enrich_record(doc, EnrichmentIndex()))
        assert doc == {"_id": "1"}


class TestRelatedNameResolver:
    """Tests for RelatedNameResolver."""

    def test_resolves_by_id_or_taxon_id(self, db: Any, insert_docs: Any) -> None:
        """Test that names are found by raw record id or taxonID."""
        insert_docs(
            db[RAW_TAXA_COLLECTION],
            [
                {"_id": "P456", "taxonID": "456", "scientificName": "Quercus rubra"},
                {"_id": "789", "scientificName": "Quercus nigra"},
            ],
        )
        doc = {
            "_id": "P123",
            "othernames": [
                {"taxonID": "456", "scientificName": None},
                {"taxonID": "789", "scientificName": None},
                {"taxonID": "1", "scientificName": "Already named"},
            ],
        }

        unresolved = RelatedNameResolver(db[RAW_TAXA_COLLECTION]).resolve(doc)

        assert unresolved == 0
        assert [entry["scientificName"] for entry in doc["othernames"]] == [
            "Quercus rubra",
            "Quercus nigra",
            "Already named",
        ]

    def test_prefers_same_source(self, db: Any, insert_docs: Any) -> None:
        """Test that a shared taxonID resolves to the taxon from the same source."""
        insert_docs(
            db[RAW_TAXA_COLLECTION],
            [
                {"_id": "A5", "taxonID": "5", "scientificName": "Puma concolor"},
                {"_id": "P5", "taxonID": "5", "scientificName": "Ocotea porosa"},
            ],
        )
        flora = {"_id": "P9", "taxonID": "9", "othernames": [{"taxonID": "5", "scientificName": None}]}
        fauna = {"_id": "A9", "taxonID": "9", "othernames": [{"taxonID": "5", "scientificName": None}]}
        resolver = RelatedNameResolver(db[RAW_TAXA_COLLECTION])

        resolver.resolve(flora)
        resolver.resolve(fauna)

        assert flora["othernames"][0]["scientificName"] == "Ocotea porosa"
        assert fauna["othernames"][0]["scientificName"] == "Puma concolor"

    def test_unresolved_counted(self, db: Any) -> None:
        """Test that a missing related taxon keeps a None name and is counted."""
        tracker = ProcessMetricsTracker("transform_taxa")
        doc = {"_id": "P123", "othernames": [{"taxonID": "999", "scientificName": None}, {"taxonID": None}]}

        unresolved = RelatedNameResolver(db[RAW_TAXA_COLLECTION]).resolve(doc, tracker)

        assert unresolved == 2
        assert doc["othernames"][0]["scientificName"] is None
        assert tracker.error_summary == {OTHERNAMES_UNRESOLVED_ERROR: 2}

    def test_misses_cached(self) -> None:
        """Test that each related id is queried once, even when missing."""
        collection = MagicMock()
        collection.find_one.return_value = None
        resolver = RelatedNameResolver(collection)

        assert resolver.lookup("999") is None
        assert resolver.lookup("999") is None
        collection.find_one.assert_called_once()

    def test_no_othernames(self) -> None:
        """Test that documents without othernames are left alone."""
        assert RelatedNameResolver(MagicMock()).resolve({"_id": "1"}) == 0


class TestTaxonMatcher:
    """Tests for TaxonMatcher."""

    def make_matcher(self, db: Any, insert_docs: Any) -> TaxonMatcher:
        insert_docs(
            db[TAXA_COLLECTION],
            [
                {
                    "_id": "P1",
                    "scientificName": "Quercus alba L.",
                    "canonicalName": "Quercus alba",
                    "flatScientificName": "quercusalbal",
                    "kingdom": "Plantae",
                    "distribution": {"occurrence": ["BR-SP"]},
                },
                {"_id": "A2", "scientificName": "Puma concolor", "kingdom": "Animalia"},
            ],
        )
        return TaxonMatcher.from_collection(db[TAXA_COLLECTION])

    def test_match_by_id(self, db: Any, insert_docs: Any) -> None:
        """Test that taxonID wins over names."""
        matcher = self.make_matcher(db, insert_docs)
        assert len(matcher) == 2
        taxon = matcher.match({"taxonID": "A2", "scientificName": "Quercus alba"})
        assert taxon is not None
        assert taxon.id == "A2"

    def test_match_by_names(self, db: Any, insert_docs: Any) -> None:
        """Test matching by flat, canonical, and scientific name."""
        matcher = self.make_matcher(db, insert_docs)
        by_flat = matcher.match({"flatScientificName": "QUERCUSALBAL"})
        by_canonical = matcher.match({"canonicalName": "quercus  alba"})
        by_scientific = matcher.match({"scientificName": "Puma concolor"})
        assert by_flat is not None and by_flat.id == "P1"
        assert by_canonical is not None and by_canonical.id == "P1"
        assert by_scientific is not None and by_scientific.id == "A2"

    def test_no_match(self, db: Any, insert_docs: Any) -> None:
        """Test that an unknown occurrence matches nothing."""
        assert self.make_matcher(db, insert_docs).match({"scientificName": "Abies"}) is None


class TestCollectors:
    """Tests for collector parsing."""

    def test_split_collectors(self) -> None:
        """Test splitting on commas and semicolons."""
        assert split_collectors("Silva, J.; Souza ;") == ["Silva", "J.", "Souza"]

    def test_load_default(self) -> None:
        """Test that no path gives the default parser."""
        assert load_collector_parser(None) is split_collectors

    def test_load_by_path(self) -> None:
        """Test that a module:function path is imported."""
        parser = load_collector_parser("biodiversity_ingest.enrichment.occurrences:split_collectors")
        assert parser is split_collectors

    def test_load_failures_fall_back(self) -> None:
        """Test that unknown modules and non-callables fall back to the default."""
        assert load_collector_parser("no_such_module_here:parse") is split_collectors
        assert load_collector_parser("biodiversity_ingest.enrichment.occurrences:missing") is split_collectors


class TestEnrichOccurrence:
    """Tests for enrich_occurrence."""

    def test_taxon_and_collectors(self) -> None:
        """Test that the matched taxon's names and parsed collectors are written."""
        matcher = TaxonMatcher()
        matcher.add(TaxonSummary("P1", "Quercus alba L.", "Quercus alba", "quercusalbal", "Plantae"))
        doc: dict[str, Any] = {"scientificName": "Quercus alba", "recordedBy": "Silva, J.; Silva"}

        result = enrich_occurrence(doc, matcher)

        assert result.taxon_matched
        assert result.parsing_status == "success"
        assert doc["taxonID"] == "P1"
        assert doc["scientificName"] == "Quercus alba L."
        assert doc["kingdom"] == "Plantae"
        assert doc["collectors"] == ["Silva", "J."]
        assert doc["parsingStatus"] == "success"

    def test_parser_failure(self) -> None:
        """Test that a raising parser marks the occurrence as failed."""

        def broken(value: str) -> list[str]:
            raise ValueError(value)

        doc: dict[str, Any] = {"recordedBy": "Silva"}
        result = enrich_occurrence(doc, TaxonMatcher(), broken)

        assert not result.taxon_matched
        assert result.parsing_status == "failed"
        assert doc["parsingStatus"] == "failed"
        assert "collectors" not in doc

    def test_no_recorded_by(self) -> None:
        """Test that a missing recordedBy is skipped without a status."""
        doc: dict[str, Any] = {"scientificName": "x"}
        assert enrich_occurrence(doc, TaxonMatcher()).parsing_status == "skipped"
        assert "parsingStatus" not in doc
