"""Pytest configuration for biodiversity-ingest tests.

This file is automatically loaded by pytest and sets up test fixtures
and configuration that are shared across all test modules.

The in-memory MongoDB double implements only the subset of the pymongo
``Collection`` API the pipelines call, with the same atomicity a single
server gives each operation.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from bson import ObjectId
from dotenv import load_dotenv
from pymongo import ReplaceOne, UpdateOne
from pymongo.errors import DuplicateKeyError, OperationFailure

from biodiversity_ingest.store.metrics import ProcessMetricsTracker

# Load .env file so integration tests can reach a configured MongoDB
# This runs before any tests are collected
load_dotenv()

_MISSING = object()


# =============================================================================
# Query matching
# =============================================================================


def _get_path(doc: Any, path: str) -> Any:
    current = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _unset_path(doc: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def _is_operator_condition(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(key.startswith("$") for key in condition)


def _matches_condition(value: Any, condition: Any) -> bool:
    if not _is_operator_condition(condition):
        if condition is None:
            return value is _MISSING or value is None
        return value is not _MISSING and value == condition

    for op, arg in condition.items():
        if op == "$eq":
            if value is _MISSING or value != arg:
                return False
        elif op == "$ne":
            if value is not _MISSING and value == arg:
                return False
        elif op == "$in":
            if value is _MISSING or value not in arg:
                return False
        elif op == "$nin":
            if value is not _MISSING and value in arg:
                return False
        elif op == "$exists":
            if (value is not _MISSING) != bool(arg):
                return False
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            if value is _MISSING or value is None:
                return False
            if op == "$lt" and not value < arg:
                return False
            if op == "$lte" and not value <= arg:
                return False
            if op == "$gt" and not value > arg:
                return False
            if op == "$gte" and not value >= arg:
                return False
        else:
            raise NotImplementedError(f"Unsupported query operator {op}")
    return True


def matches(doc: dict[str, Any], query: dict[str, Any] | None) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(_get_path(doc, key), condition):
            return False
    return True


def _project(doc: dict[str, Any], projection: dict[str, Any] | None) -> dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)
    included = {key for key, value in projection.items() if value}
    if projection.get("_id", 1):
        included.add("_id")
    return {key: copy.deepcopy(value) for key, value in doc.items() if key in included}


def _apply_update(doc: dict[str, Any], update: dict[str, Any], inserting: bool = False) -> None:
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        elif op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    _set_path(doc, path, copy.deepcopy(value))
        elif op == "$inc":
            for path, amount in fields.items():
                current = _get_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING else current) + amount)
        else:
            raise NotImplementedError(f"Unsupported update operator {op}")


def _seed_from_query(query: dict[str, Any]) -> dict[str, Any]:
    """Equality fields of a query become fields of an upserted document."""
    seed: dict[str, Any] = {}
    for key, condition in query.items():
        if key.startswith("$") or _is_operator_condition(condition):
            continue
        _set_path(seed, key, copy.deepcopy(condition))
    return seed


# =============================================================================
# Collection and database doubles
# =============================================================================


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1) -> FakeCursor:
        present = [doc for doc in self._docs if key in doc]
        absent = [doc for doc in self._docs if key not in doc]
        present.sort(key=lambda doc: doc[key], reverse=direction < 0)
        self._docs = absent + present if direction > 0 else present + absent
        return self

    def limit(self, count: int) -> FakeCursor:
        if count:
            self._docs = self._docs[:count]
        return self

    def batch_size(self, size: int) -> FakeCursor:
        return self

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self._docs)


class FakeCollection:
    """Thread-safe in-memory stand-in for a pymongo collection.

    Attributes:
        bulk_calls: Size of every ``bulk_write`` call, in order
        fail_bulk_over: Make ``bulk_write`` raise for batches larger than this
    """

    def __init__(self, name: str):
        self.name = name
        self.docs: dict[Any, dict[str, Any]] = {}
        self.indexes: list[Any] = []
        self.bulk_calls: list[int] = []
        self.fail_bulk_over: int | None = None
        self._lock = threading.RLock()

    def _matching(self, query: dict[str, Any] | None) -> list[dict[str, Any]]:
        return [doc for doc in self.docs.values() if matches(doc, query)]

    def _insert(self, doc: dict[str, Any]) -> Any:
        doc.setdefault("_id", ObjectId())
        if doc["_id"] in self.docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} _id: {doc['_id']!r}")
        self.docs[doc["_id"]] = doc
        return doc["_id"]

    def _upsert(self, query: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
        doc = _seed_from_query(query)
        _apply_update(doc, update, inserting=True)
        self._insert(doc)
        return doc

    # Reads

    def find_one(self, query: dict[str, Any] | None = None, projection: dict[str, Any] | None = None) -> Any:
        with self._lock:
            found = self._matching(query)
            return _project(found[0], projection) if found else None

    def find(self, query: dict[str, Any] | None = None, projection: dict[str, Any] | None = None) -> FakeCursor:
        with self._lock:
            return FakeCursor([_project(doc, projection) for doc in self._matching(query)])

    def count_documents(self, query: dict[str, Any]) -> int:
        with self._lock:
            return len(self._matching(query))

    def distinct(self, key: str, query: dict[str, Any] | None = None) -> list[Any]:
        with self._lock:
            values: list[Any] = []
            for doc in self._matching(query):
                value = _get_path(doc, key)
                if value is not _MISSING and value not in values:
                    values.append(value)
            return values

    # Writes

    def insert_one(self, doc: dict[str, Any]) -> SimpleNamespace:
        with self._lock:
            stored = copy.deepcopy(doc)
            inserted_id = self._insert(stored)
            doc.setdefault("_id", inserted_id)
            return SimpleNamespace(inserted_id=inserted_id)

    def update_one(self, query: dict[str, Any], update: dict[str, Any], upsert: bool = False) -> SimpleNamespace:
        with self._lock:
            found = self._matching(query)
            if found:
                before = copy.deepcopy(found[0])
                _apply_update(found[0], update)
                return SimpleNamespace(matched_count=1, modified_count=int(before != found[0]), upserted_id=None)
            if upsert:
                doc = self._upsert(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    def delete_many(self, query: dict[str, Any]) -> SimpleNamespace:
        with self._lock:
            doomed = [doc["_id"] for doc in self._matching(query)]
            for doc_id in doomed:
                del self.docs[doc_id]
            return SimpleNamespace(deleted_count=len(doomed))

    def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        projection: dict[str, Any] | None = None,
        upsert: bool = False,
        return_document: bool = False,
    ) -> Any:
        with self._lock:
            found = self._matching(query)
            if not found:
                if not upsert:
                    return None
                doc = self._upsert(query, update)
                return _project(doc, projection) if return_document else None
            before = _project(found[0], projection)
            _apply_update(found[0], update)
            return _project(found[0], projection) if return_document else before

    def bulk_write(self, operations: list[Any], ordered: bool = True) -> SimpleNamespace:
        with self._lock:
            self.bulk_calls.append(len(operations))
            if self.fail_bulk_over is not None and len(operations) > self.fail_bulk_over:
                raise OperationFailure(f"Batch of {len(operations)} operations rejected")
            upserted = modified = matched = 0
            for operation in operations:
                query, body, upsert = operation._filter, operation._doc, operation._upsert
                found = self._matching(query)
                if found:
                    matched += 1
                    current = found[0]
                    before = copy.deepcopy(current)
                    if isinstance(operation, ReplaceOne):
                        current.clear()
                        current.update(copy.deepcopy(body))
                        current["_id"] = before["_id"]
                    elif isinstance(operation, UpdateOne):
                        _apply_update(current, body)
                    else:
                        raise NotImplementedError(type(operation).__name__)
                    modified += int(before != current)
                elif upsert:
                    if isinstance(operation, ReplaceOne):
                        doc = copy.deepcopy(body)
                        doc.setdefault("_id", query.get("_id"))
                        self._insert(doc)
                    else:
                        self._upsert(query, body)
                    upserted += 1
            return SimpleNamespace(upserted_count=upserted, modified_count=modified, matched_count=matched)

    def create_index(self, keys: Any, **kwargs: Any) -> str:
        with self._lock:
            self.indexes.append((keys, kwargs))
            if kwargs.get("name"):
                return str(kwargs["name"])
            if isinstance(keys, str):
                return f"{keys}_1"
            return "_".join(f"{field}_{direction}" for field, direction in keys)


class FakeDatabase:
    """Collections are created on first access, like a pymongo database."""

    def __init__(self, name: str = "test"):
        self.name = name
        self.collections: dict[str, FakeCollection] = {}
        self._lock = threading.Lock()

    def __getitem__(self, name: str) -> FakeCollection:
        with self._lock:
            if name not in self.collections:
                self.collections[name] = FakeCollection(name)
            return self.collections[name]


# =============================================================================
# Archive builder
# =============================================================================

TAXON_META_XML = """<?xml version="1.0" encoding="UTF-8"?>
<archive xmlns="http://rs.tdwg.org/dwc/text/" metadata="eml.xml">
  <core encoding="UTF-8" fieldsTerminatedBy="\\t" ignoreHeaderLines="1" rowType="http://rs.tdwg.org/dwc/terms/Taxon">
    <files><location>taxon.txt</location></files>
    <id index="0"/>
    <field index="0" term="http://rs.tdwg.org/dwc/terms/taxonID"/>
    <field index="1" term="http://rs.tdwg.org/dwc/terms/scientificName"/>
    <field index="2" term="http://rs.tdwg.org/dwc/terms/taxonRank"/>
    <field index="3" term="http://rs.tdwg.org/dwc/terms/kingdom"/>
  </core>
  <extension encoding="UTF-8" rowType="http://rs.gbif.org/terms/1.0/VernacularName">
    <files><location>vernacularname.txt</location></files>
    <coreid index="0"/>
    <field index="1" term="http://rs.tdwg.org/dwc/terms/vernacularName"/>
    <field index="2" term="http://purl.org/dc/terms/language"/>
  </extension>
  <extension encoding="UTF-8" rowType="http://rs.gbif.org/terms/1.0/Distribution">
    <files><location>distribution.txt</location></files>
    <coreid index="0"/>
    <field index="1" term="http://rs.tdwg.org/dwc/terms/locationID"/>
    <field index="2" term="http://rs.tdwg.org/dwc/terms/occurrenceRemarks"/>
  </extension>
</archive>
"""

# The last core line has no trailing newline on purpose
TAXON_ARCHIVE_FILES = {
    "taxon.txt": (
        "id\tscientificName\ttaxonRank\tkingdom\n"
        "1\tQuercus alba L.\tESPECIE\tPlantae\n"
        "2\tPinus taeda\tESPECIE\tPlantae\n"
        "3\tAbies\tGENERO\tPlantae"
    ),
    "vernacularname.txt": (
        "id\tvernacularName\tlanguage\n"
        "1\tcarvalho branco\tportuguês\n"
        "1\twhite oak\tinglês\n"
        "9\tghost\t\n"
        "2\t\t\n"
    ),
    "distribution.txt": (
        "id\tlocationID\toccurrenceRemarks\n"
        '2\tBR-SP\t{"endemism":"Não endêmica"}\n'
        "3\tBR-RJ\t\n"
    ),
}

EML_XML = """<?xml version="1.0" encoding="UTF-8"?>
<eml:eml xmlns:eml="eml://ecoinformatics.org/eml-2.1.1"
         packageId="br.gov.jbrj/lista_flora/393.401" system="http://gbif.org">
  <dataset>
    <alternateIdentifier>5a2b3c4d-uuid</alternateIdentifier>
    <alternateIdentifier>https://ipt.jbrj.gov.br/jbrj/resource?r=lista_flora</alternateIdentifier>
    <title xml:lang="por">Flora e Funga do Brasil</title>
    <creator><organizationName>JBRJ</organizationName></creator>
    <pubDate>2024-01-02</pubDate>
    <language>por</language>
  </dataset>
</eml:eml>
"""


def write_archive(
    directory: Path,
    meta_xml: str = TAXON_META_XML,
    files: dict[str, str] | None = None,
    eml_xml: str | None = EML_XML,
) -> Path:
    """Write an extracted Darwin Core Archive into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "meta.xml").write_text(meta_xml, encoding="utf-8")
    for name, content in (files if files is not None else TAXON_ARCHIVE_FILES).items():
        (directory / name).write_bytes(content.encode("utf-8"))
    if eml_xml is not None:
        (directory / "eml.xml").write_text(eml_xml, encoding="utf-8")
    return directory


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def db() -> FakeDatabase:
    """An empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def metrics() -> ProcessMetricsTracker:
    return ProcessMetricsTracker("test_process", runner_id="test-runner", version="test")


@pytest.fixture
def archive_dir(tmp_path: Path) -> Path:
    """An extracted taxon archive with two extensions."""
    return write_archive(tmp_path / "archive")


@pytest.fixture
def make_archive(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing archives with custom manifests and data files."""
    counter = iter(range(1000))

    def make(meta_xml: str = TAXON_META_XML, files: dict[str, str] | None = None, **kwargs: Any) -> Path:
        return write_archive(tmp_path / f"archive-{next(counter)}", meta_xml, files, **kwargs)

    return make


@pytest.fixture
def insert_docs() -> Callable[[FakeCollection, Iterable[dict[str, Any]]], None]:
    def insert(collection: FakeCollection, docs: Iterable[dict[str, Any]]) -> None:
        for doc in docs:
            collection.insert_one(copy.deepcopy(doc))

    return insert
