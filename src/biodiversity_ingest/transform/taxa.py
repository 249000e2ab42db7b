"""Normalization steps for taxon records (flora and fauna checklists).

Each step takes the document produced by the previous step and returns it
(mutated in place; the first step clones the raw input) or None to reject it.
"""

from __future__ import annotations

import copy
from typing import Any

from biodiversity_ingest.transform.common import (
    build_canonical_name,
    build_flat_scientific_name,
    text,
    validate_and_clone,
)
from biodiversity_ingest.transform.pipeline import Document, TransformPipeline, TransformStep

FAUNA_KINGDOM = "Animalia"
DEFAULT_VERNACULAR_LANGUAGE = "Português"

# Only species and infraspecific ranks are published
RANK_WHITELIST = frozenset({"ESPECIE", "VARIEDADE", "FORMA", "SUB_ESPECIE"})


def filter_by_taxon_rank(doc: Document) -> Document | None:
    rank = doc.get("taxonRank")
    if not isinstance(rank, str) or rank not in RANK_WHITELIST:
        return None
    return doc


def normalize_higher_classification(doc: Document) -> Document:
    """Keep the second ``;``-separated component, or the first if there is only one."""
    value = doc.get("higherClassification")
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(";")]
        normalized = parts[1] if len(parts) > 1 and parts[1] else parts[0]
        if normalized:
            doc["higherClassification"] = normalized
    return doc


def normalize_kingdom(doc: Document) -> Document:
    value = text(doc.get("kingdom"))
    if value:
        doc["kingdom"] = FAUNA_KINGDOM if "animalia" in value.lower() else value
    return doc


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:].lower()


def normalize_vernacular_names(doc: Document) -> Document:
    """Lowercase and hyphenate vernacular names; default the language to Portuguese."""
    entries = doc.get("vernacularname")
    if not isinstance(entries, list):
        return doc

    normalized = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = text(entry.get("vernacularName"))
        if not name:
            continue
        language = text(entry.get("language"))
        normalized.append(
            {
                "vernacularName": "-".join(name.lower().split()),
                "language": _capitalize(language) if language else DEFAULT_VERNACULAR_LANGUAGE,
            }
        )
    if normalized:
        doc["vernacularname"] = normalized
    return doc


def _split_list(value: Any) -> list[str]:
    if not isinstance(value, str):
        return []
    return [item.strip() for item in value.split(";") if item.strip()]


def _flora_distribution(entries: list[dict[str, Any]], species_profile: Any) -> dict[str, Any]:
    first = entries[0]
    remarks = first.get("occurrenceRemarks")
    if not isinstance(remarks, dict):
        remarks = {}

    vegetation_type = None
    if isinstance(species_profile, list) and species_profile and isinstance(species_profile[0], dict):
        life_form = species_profile[0].get("lifeForm")
        if isinstance(life_form, dict):
            vegetation_type = life_form.get("vegetationType")

    return {
        "origin": text(first.get("establishmentMeans")),
        "Endemism": remarks.get("endemism"),
        "phytogeographicDomains": remarks.get("phytogeographicDomain"),
        "occurrence": sorted(loc for loc in (text(e.get("locationID")) for e in entries) if loc),
        "vegetationType": vegetation_type,
    }


def _fauna_distribution(entries: list[dict[str, Any]]) -> dict[str, Any]:
    first = entries[0]
    return {
        "origin": text(first.get("establishmentMeans")),
        "occurrence": _split_list(first.get("locality")),
        "countryCode": _split_list(first.get("countryCode")),
    }


def extract_distribution(doc: Document) -> Document:
    """Collapse distribution rows into one summary object.

    Must run before :func:`normalize_species_profile`, which drops the
    vegetation type this step reads.
    """
    distribution = doc.get("distribution")
    entries = [e for e in distribution if isinstance(e, dict)] if isinstance(distribution, list) else []
    if not entries:
        doc.pop("distribution", None)
        return doc

    if doc.get("kingdom") == FAUNA_KINGDOM:
        doc["distribution"] = _fauna_distribution(entries)
    else:
        doc["distribution"] = _flora_distribution(entries, doc.get("speciesprofile"))
    return doc


def normalize_species_profile(doc: Document) -> Document:
    """Keep only the first species profile, without its vegetation type."""
    profiles = doc.get("speciesprofile")
    if not isinstance(profiles, list) or not profiles or not isinstance(profiles[0], dict):
        doc.pop("speciesprofile", None)
        return doc

    profile = copy.deepcopy(profiles[0])
    life_form = profile.get("lifeForm")
    if isinstance(life_form, dict):
        life_form.pop("vegetationType", None)
    doc["speciesprofile"] = profile
    return doc


def convert_resource_relationship(doc: Document) -> Document:
    """Turn resource relationships into ``othernames`` entries.

    The related taxon's scientific name is left as None here; it is filled in
    during enrichment from the raw collection.
    """
    relationships = doc.pop("resourcerelationship", None)
    if not isinstance(relationships, list):
        return doc

    othernames = []
    for entry in relationships:
        if not isinstance(entry, dict):
            continue
        taxon_id = text(entry.get("relatedResourceID"))
        if not taxon_id:
            continue
        othernames.append(
            {
                "taxonID": taxon_id,
                "scientificName": None,
                "taxonomicStatus": text(entry.get("relationshipOfResource")),
            }
        )
    if othernames:
        doc["othernames"] = othernames
    return doc


def force_animalia_kingdom(doc: Document) -> Document:
    """Records published by a fauna provider are always Animalia."""
    provider_kingdom = text(doc.get("iptKingdom"))
    if provider_kingdom and provider_kingdom.lower() == FAUNA_KINGDOM.lower():
        doc["kingdom"] = FAUNA_KINGDOM
    return doc


def build_taxa_pipeline() -> TransformPipeline:
    return TransformPipeline(
        "taxa-normalization",
        [
            TransformStep("validate-and-clone", validate_and_clone),
            TransformStep("filter-by-taxon-rank", filter_by_taxon_rank),
            TransformStep("build-canonical-name", build_canonical_name),
            TransformStep("build-flat-scientific-name", build_flat_scientific_name),
            TransformStep("normalize-higher-classification", normalize_higher_classification),
            TransformStep("normalize-kingdom", normalize_kingdom),
            TransformStep("normalize-vernacular-names", normalize_vernacular_names),
            TransformStep("extract-distribution", extract_distribution),
            TransformStep("normalize-species-profile", normalize_species_profile),
            TransformStep("convert-resource-relationship", convert_resource_relationship),
            TransformStep("force-animalia-kingdom", force_animalia_kingdom),
        ],
    )
