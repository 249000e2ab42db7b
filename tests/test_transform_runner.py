"""Tests for the resumable transform runner."""

import copy
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest

from biodiversity_ingest.errors import LockAcquisitionError
from biodiversity_ingest.store.bulk_writer import DOC_TOO_LARGE_ERROR, BulkWriter
from biodiversity_ingest.store.collections import (
    LOCK_AUDIT_COLLECTION,
    OCCURRENCES_COLLECTION,
    PLANTAE_THREATENED_COLLECTION,
    PROCESS_LOCKS_COLLECTION,
    PROCESS_METRICS_COLLECTION,
    RAW_OCCURRENCES_COLLECTION,
    RAW_TAXA_COLLECTION,
    TAXA_COLLECTION,
)
from biodiversity_ingest.store.locks import ProcessLockManager
from biodiversity_ingest.store.metrics import ProcessMetricsTracker
from biodiversity_ingest.transform.pipeline import TransformPipeline, TransformStep
from biodiversity_ingest.transform.runner import (
    ENRICHMENT_ERROR,
    INCONSISTENT_ID_ERROR,
    iter_batches,
    process_batch,
    run_transform,
    transform_record,
)

UNPROCESSED = {"is_processed": False, "last_transform_attempt": None, "transform_error": None, "pipeline_version": None}

RAW_TAXA = [
    {
        "_id": "P1",
        "taxonID": "1",
        "iptId": "br.gov.jbrj/lista_flora",
        "ipt_record_id": "1",
        "iptKingdom": "Plantae",
        "scientificName": "Quercus alba L.",
        "genus": "Quercus",
        "specificEpithet": "alba",
        "taxonRank": "ESPECIE",
        "kingdom": "Plantae",
        "processing_status": UNPROCESSED,
    },
    {
        "_id": "P2",
        "taxonID": "2",
        "iptId": "br.gov.jbrj/lista_flora",
        "ipt_record_id": "2",
        "iptKingdom": "Plantae",
        "scientificName": "Quercus robur L.",
        "genus": "Quercus",
        "specificEpithet": "robur",
        "taxonRank": "ESPECIE",
        "kingdom": "Plantae",
        "resourcerelationship": [{"relatedResourceID": "1", "relationshipOfResource": "SINONIMO_BASIONIMO"}],
        "processing_status": UNPROCESSED,
    },
    {
        "_id": "P3",
        "taxonID": "3",
        "iptId": "br.gov.jbrj/lista_flora",
        "ipt_record_id": "3",
        "scientificName": "Abies",
        "taxonRank": "GENERO",
        "kingdom": "Plantae",
        "processing_status": UNPROCESSED,
    },
]


@pytest.fixture
def locks(db: Any) -> ProcessLockManager:
    return ProcessLockManager(db[PROCESS_LOCKS_COLLECTION], db[LOCK_AUDIT_COLLECTION])


@pytest.fixture
def taxa_db(db: Any, insert_docs: Any) -> Any:
    insert_docs(db[RAW_TAXA_COLLECTION], RAW_TAXA)
    insert_docs(db[PLANTAE_THREATENED_COLLECTION], [{"_id": "T1", "canonicalName": "Quercus alba", "categoria": "EN"}])
    return db


class TestRunTransformTaxa:
    """Tests for run_transform on taxa."""

    def test_transforms_and_enriches(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that species are normalized, enriched, and stamped."""
        snapshot = run_transform(taxa_db, "taxa", locks, version="v1", runner_id="runner-1", batch_size=2, workers=2)

        assert snapshot.records_processed == 3
        assert snapshot.records_inserted == 2
        assert snapshot.records_failed == 1
        assert snapshot.error_summary == {"normalization:filter-by-taxon-rank": 1}

        taxa = taxa_db[TAXA_COLLECTION]
        assert sorted(taxa.docs) == ["P1", "P2"]
        oak = taxa.find_one({"_id": "P1"})
        assert oak["canonicalName"] == "Quercus alba"
        assert oak["threatStatus"] == [{"source": PLANTAE_THREATENED_COLLECTION, "category": "EN"}]
        assert oak["_transformVersion"] == "v1"
        assert oak["original_reference"] == {
            "original_id": "P1",
            "iptId": "br.gov.jbrj/lista_flora",
            "ipt_record_id": "1",
        }
        assert "processing_status" not in oak
        robur = taxa.find_one({"_id": "P2"})
        assert robur["othernames"] == [
            {"taxonID": "1", "scientificName": "Quercus alba L.", "taxonomicStatus": "SINONIMO_BASIONIMO"}
        ]

    def test_raw_status_recorded(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that every raw document records its outcome."""
        run_transform(taxa_db, "taxa", locks, version="v1")

        raw = taxa_db[RAW_TAXA_COLLECTION]
        ok = raw.find_one({"_id": "P1"})["processing_status"]
        rejected = raw.find_one({"_id": "P3"})["processing_status"]
        assert ok["is_processed"] is True
        assert ok["pipeline_version"] == "v1"
        assert ok["transform_error"] is None
        assert rejected["is_processed"] is False
        assert rejected["transform_error"] == "normalization:filter-by-taxon-rank"
        assert rejected["pipeline_version"] == "v1"

    def test_rerun_is_noop(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that a second run at the same version processes nothing and changes nothing."""
        run_transform(taxa_db, "taxa", locks, version="v1")
        before = copy.deepcopy(taxa_db[TAXA_COLLECTION].docs)
        second = run_transform(taxa_db, "taxa", locks, version="v1")

        assert second.records_processed == 0
        assert taxa_db[TAXA_COLLECTION].docs == before
        assert taxa_db[PROCESS_METRICS_COLLECTION].count_documents({}) == 2

    def test_new_version_reprocesses(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that a new version transforms everything again."""
        run_transform(taxa_db, "taxa", locks, version="v1")
        second = run_transform(taxa_db, "taxa", locks, version="v2")

        assert second.records_processed == 3
        assert taxa_db[TAXA_COLLECTION].find_one({"_id": "P1"})["_transformVersion"] == "v2"

    def test_stale_enrichment_cleared(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that a taxon dropped from a reference list loses its enrichment."""
        run_transform(taxa_db, "taxa", locks, version="v1")
        taxa_db[PLANTAE_THREATENED_COLLECTION].delete_many({})

        run_transform(taxa_db, "taxa", locks, version="v2")

        assert "threatStatus" not in taxa_db[TAXA_COLLECTION].find_one({"_id": "P1"})

    def test_dry_run_writes_nothing(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that a dry run transforms without writing."""
        snapshot = run_transform(taxa_db, "taxa", locks, version="v1", dry_run=True)

        assert snapshot.records_processed == 3
        assert taxa_db[TAXA_COLLECTION].count_documents({}) == 0
        assert taxa_db[PROCESS_METRICS_COLLECTION].count_documents({}) == 0
        assert taxa_db[RAW_TAXA_COLLECTION].find_one({"_id": "P1"})["processing_status"] == UNPROCESSED

    def test_lock_contention(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that a held transform lock stops the run before any work."""
        locks.acquire("transform_taxa", runner_id="other-runner")

        with pytest.raises(LockAcquisitionError, match="other-runner"):
            run_transform(taxa_db, "taxa", locks, version="v1")

        assert taxa_db[TAXA_COLLECTION].count_documents({}) == 0
        assert taxa_db[PROCESS_METRICS_COLLECTION].count_documents({}) == 0

    def test_lock_released(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that the lock is completed after the run."""
        run_transform(taxa_db, "taxa", locks, version="v1")
        lock = locks.get_status("transform_taxa")
        assert lock is not None
        assert lock.status == "completed"

    def test_enricher_failure_counted(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that an enrichment error fails only the affected record."""

        def enricher(doc: dict[str, Any], metrics: ProcessMetricsTracker) -> None:
            if doc["_id"] == "P2":
                raise RuntimeError("reference lookup failed")

        snapshot = run_transform(taxa_db, "taxa", locks, version="v1", enricher=enricher)

        assert snapshot.error_summary[ENRICHMENT_ERROR] == 1
        assert sorted(taxa_db[TAXA_COLLECTION].docs) == ["P1"]
        status = taxa_db[RAW_TAXA_COLLECTION].find_one({"_id": "P2"})["processing_status"]
        assert status["transform_error"] == ENRICHMENT_ERROR

    def test_without_enrichment(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that enrichment can be turned off."""
        run_transform(taxa_db, "taxa", locks, version="v1", enrich=False)
        assert "threatStatus" not in taxa_db[TAXA_COLLECTION].find_one({"_id": "P1"})

    def test_unknown_domain(self, taxa_db: Any, locks: ProcessLockManager) -> None:
        """Test that an unknown domain is rejected."""
        with pytest.raises(KeyError):
            run_transform(taxa_db, "specimens", locks, version="v1")


class TestRunTransformOccurrences:
    """Tests for run_transform on occurrences."""

    def test_links_taxa_and_filters_country(self, db: Any, insert_docs: Any, locks: ProcessLockManager) -> None:
        """Test that Brazilian occurrences are linked to taxa and others rejected."""
        insert_docs(
            db[TAXA_COLLECTION],
            [
                {
                    "_id": "P1",
                    "scientificName": "Quercus alba L.",
                    "canonicalName": "Quercus alba",
                    "flatScientificName": "quercusalbal",
                    "kingdom": "Plantae",
                }
            ],
        )
        insert_docs(
            db[RAW_OCCURRENCES_COLLECTION],
            [
                {
                    "_id": "urn:occ:1::jbrj/herbario",
                    "occurrenceID": "urn:occ:1",
                    "iptId": "jbrj/herbario",
                    "scientificName": "Quercus alba",
                    "country": "Brasil",
                    "iptKingdom": "Plantae",
                    "recordedBy": "Silva, J.",
                },
                {
                    "_id": "urn:occ:2::jbrj/herbario",
                    "occurrenceID": "urn:occ:2",
                    "iptId": "jbrj/herbario",
                    "scientificName": "Quercus alba",
                    "country": "Peru",
                },
            ],
        )

        snapshot = run_transform(db, "occurrences", locks, version="v1")

        assert snapshot.records_processed == 2
        assert snapshot.error_summary == {"normalization:check-brazilian-and-set-reproductive-condition": 1}
        occurrence = db[OCCURRENCES_COLLECTION].find_one({"_id": "urn:occ:1::jbrj/herbario"})
        assert occurrence["taxonID"] == "P1"
        assert occurrence["scientificName"] == "Quercus alba L."
        assert occurrence["collectors"] == ["Silva", "J."]
        assert db[OCCURRENCES_COLLECTION].count_documents({}) == 1

    def test_rerun_leaves_occurrences_unchanged(self, db: Any, insert_docs: Any, locks: ProcessLockManager) -> None:
        """Test that a second run at the same version leaves normalized occurrences as they were."""
        insert_docs(
            db[RAW_OCCURRENCES_COLLECTION],
            [
                {
                    "_id": "urn:occ:3::jbrj/herbario",
                    "occurrenceID": "urn:occ:3",
                    "iptId": "jbrj/herbario",
                    "scientificName": "Pinus taeda",
                    "country": "Brasil",
                    "recordedBy": "Souza, M.",
                }
            ],
        )
        run_transform(db, "occurrences", locks, version="v1")
        before = copy.deepcopy(db[OCCURRENCES_COLLECTION].docs)
        assert before

        second = run_transform(db, "occurrences", locks, version="v1")

        assert second.records_processed == 0
        assert db[OCCURRENCES_COLLECTION].docs == before


class TestTransformRecord:
    """Tests for transform_record and process_batch."""

    def test_inconsistent_id(self, metrics: ProcessMetricsTracker) -> None:
        """Test that a pipeline changing the id is rejected."""
        pipeline = TransformPipeline("rename", [TransformStep("rename", lambda doc: {**doc, "_id": "other"})])

        outcome = transform_record({"_id": "P1"}, pipeline, None, "v1", metrics)

        assert outcome.document is None
        assert outcome.error == INCONSISTENT_ID_ERROR
        assert metrics.error_summary == {INCONSISTENT_ID_ERROR: 1}

    def test_oversized_document(self, db: Any, metrics: ProcessMetricsTracker) -> None:
        """Test that a document too large to write is reported on its outcome."""
        pipeline = TransformPipeline("identity")
        writer = BulkWriter(db[TAXA_COLLECTION], metrics, hard_doc_limit=400)
        batch = [{"_id": "small"}, {"_id": "big", "payload": "x" * 1000}]

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = process_batch(batch, pool, pipeline, None, "v1", metrics, writer)

        assert [outcome.error for outcome in outcomes] == [None, DOC_TOO_LARGE_ERROR]
        assert sorted(db[TAXA_COLLECTION].docs) == ["small"]
        assert metrics.error_summary == {DOC_TOO_LARGE_ERROR: 1}

    def test_iter_batches(self) -> None:
        """Test batching without an empty final batch."""
        docs = [{"_id": str(i)} for i in range(5)]
        assert [len(batch) for batch in iter_batches(docs, 2)] == [2, 2, 1]
        assert list(iter_batches([], 2)) == []
