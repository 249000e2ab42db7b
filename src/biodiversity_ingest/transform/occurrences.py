"""Normalization steps for occurrence records.

Only occurrences recorded in Brazil survive the pipeline; the final step
rejects everything else.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from biodiversity_ingest.transform.common import (
    build_canonical_name,
    build_flat_scientific_name,
    text,
    to_number,
    validate_and_clone,
)
from biodiversity_ingest.transform.pipeline import Document, TransformPipeline, TransformStep

BRAZIL = "Brasil"

COUNTRY_NAMES = {
    "brasil": BRAZIL,
    "brazil": BRAZIL,
}

# State codes and names (with and without accents) to canonical state names
STATE_NAMES = {
    "ac": "Acre",
    "ap": "Amapá",
    "am": "Amazonas",
    "pa": "Pará",
    "ro": "Rondônia",
    "rr": "Roraima",
    "to": "Tocantins",
    "al": "Alagoas",
    "ba": "Bahia",
    "ce": "Ceará",
    "ma": "Maranhão",
    "pb": "Paraíba",
    "pe": "Pernambuco",
    "pi": "Piauí",
    "rn": "Rio Grande do Norte",
    "se": "Sergipe",
    "go": "Goiás",
    "mt": "Mato Grosso",
    "ms": "Mato Grosso do Sul",
    "df": "Distrito Federal",
    "es": "Espírito Santo",
    "mg": "Minas Gerais",
    "rj": "Rio de Janeiro",
    "sp": "São Paulo",
    "pr": "Paraná",
    "rs": "Rio Grande do Sul",
    "sc": "Santa Catarina",
    "amapa": "Amapá",
    "para": "Pará",
    "rondonia": "Rondônia",
    "goias": "Goiás",
    "maranhao": "Maranhão",
    "paraiba": "Paraíba",
    "piaui": "Piauí",
    "espirito santo": "Espírito Santo",
    "sao paulo": "São Paulo",
    "parana": "Paraná",
    "ceara": "Ceará",
}
STATE_NAMES.update({name.lower(): name for name in list(STATE_NAMES.values())})

# "flor"/"flôr" as a standalone token in the remarks marks a flowering specimen
FLOWERING_PATTERN = re.compile(r"(?:^|[\W_])fl(?:or|ôr)(?:[\W_]|$)", re.IGNORECASE)
FLOWERING_CONDITION = "flor"

PARTIAL_DATE_PATTERN = re.compile(r"^(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?$")


def normalize_country_name(value: Any) -> str | None:
    stripped = text(value)
    return COUNTRY_NAMES.get(stripped.lower()) if stripped else None


def normalize_state_name(value: Any) -> str | None:
    stripped = text(value)
    return STATE_NAMES.get(stripped.lower()) if stripped else None


def parse_event_date(value: Any) -> datetime | None:
    """Parse an ISO 8601 date, datetime, or the start of a date range.

    >>> parse_event_date("2019-03-07/2019-03-09")
    datetime.datetime(2019, 3, 7, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    stripped = text(value)
    if not stripped:
        return None
    start = stripped.split("/", 1)[0].strip()
    try:
        parsed = datetime.fromisoformat(start)
    except ValueError:
        match = PARTIAL_DATE_PATTERN.match(start)
        if not match:
            return None
        year, month, day = match.groups()
        try:
            parsed = datetime(int(year), int(month or 1), int(day or 1))
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def normalize_occurrence_id(doc: Document) -> Document:
    if isinstance(doc.get("occurrenceID"), str):
        doc["occurrenceID"] = doc["occurrenceID"].strip()
    return doc


def build_geo_point(doc: Document) -> Document:
    """Build a GeoJSON point from decimal coordinates when both are in range."""
    latitude = to_number(doc.get("decimalLatitude"))
    longitude = to_number(doc.get("decimalLongitude"))
    if latitude is not None and longitude is not None and -90 <= latitude <= 90 and -180 <= longitude <= 180:
        doc["geoPoint"] = {"type": "Point", "coordinates": [longitude, latitude]}
    else:
        doc.pop("geoPoint", None)
    return doc


def normalize_provider_kingdoms(doc: Document) -> Document:
    """Split the provider's declared kingdom(s) into the ``iptKingdoms`` list."""
    value = doc.get("iptKingdom") or doc.get("kingdom")
    if isinstance(value, list):
        kingdoms = [k.strip() for k in value if isinstance(k, str) and k.strip()]
    elif isinstance(value, str):
        kingdoms = [k.strip() for k in re.split(r"[,;]+", value) if k.strip()]
    else:
        kingdoms = []
    if kingdoms:
        doc["iptKingdoms"] = kingdoms
    return doc


def normalize_date_fields(doc: Document) -> Document:
    """Convert year, month, and day to numbers when they are in range."""
    year = to_number(doc.get("year"))
    if year is not None and year > 0:
        doc["year"] = year
    month = to_number(doc.get("month"))
    if month is not None and 1 <= month <= 12:
        doc["month"] = month
    day = to_number(doc.get("day"))
    if day is not None and 1 <= day <= 31:
        doc["day"] = day
    return doc


def _is_set_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and value != 0


def normalize_event_date(doc: Document) -> Document:
    """Store eventDate as a datetime and fill in missing year, month, or day."""
    parsed = parse_event_date(doc.get("eventDate"))
    if parsed is None:
        return doc
    doc["eventDate"] = parsed
    if not _is_set_number(doc.get("year")):
        doc["year"] = parsed.year
    if not _is_set_number(doc.get("month")):
        doc["month"] = parsed.month
    if not _is_set_number(doc.get("day")):
        doc["day"] = parsed.day
    return doc


def normalize_country(doc: Document) -> Document:
    country = normalize_country_name(doc.get("country"))
    if country:
        doc["country"] = country
    return doc


def normalize_state(doc: Document) -> Document:
    state = normalize_state_name(doc.get("stateProvince"))
    if state:
        doc["stateProvince"] = state
    return doc


def normalize_county(doc: Document) -> Document:
    """Title-case the county name."""
    county = text(doc.get("county"))
    if county:
        doc["county"] = " ".join(word[:1].upper() + word[1:] for word in county.lower().split())
    return doc


def check_brazilian_and_set_reproductive_condition(doc: Document) -> Document | None:
    """Reject non-Brazilian occurrences; mark flowering plants.

    Plant occurrences whose remarks mention ``flor`` get
    ``reproductiveCondition = "flor"``.
    """
    if doc.get("country") != BRAZIL:
        return None
    kingdoms = [k.lower() for k in doc.get("iptKingdoms") or [] if isinstance(k, str)]
    remarks = doc.get("occurrenceRemarks")
    if "plantae" in kingdoms and isinstance(remarks, str) and FLOWERING_PATTERN.search(remarks):
        doc["reproductiveCondition"] = FLOWERING_CONDITION
    return doc


def build_occurrence_pipeline() -> TransformPipeline:
    return TransformPipeline(
        "occurrence-normalization",
        [
            TransformStep("validate-and-clone", validate_and_clone),
            TransformStep("normalize-occurrence-id", normalize_occurrence_id),
            TransformStep("build-geo-point", build_geo_point),
            TransformStep("build-canonical-name", build_canonical_name),
            TransformStep("build-flat-scientific-name", build_flat_scientific_name),
            TransformStep("normalize-provider-kingdoms", normalize_provider_kingdoms),
            TransformStep("normalize-date-fields", normalize_date_fields),
            TransformStep("normalize-event-date", normalize_event_date),
            TransformStep("normalize-country", normalize_country),
            TransformStep("normalize-state", normalize_state),
            TransformStep("normalize-county", normalize_county),
            TransformStep(
                "check-brazilian-and-set-reproductive-condition",
                check_brazilian_and_set_reproductive_condition,
            ),
        ],
    )
