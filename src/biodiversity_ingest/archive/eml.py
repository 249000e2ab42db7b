"""Provider dataset metadata (EML) parsing.

Every published archive is described by an EML document whose ``packageId``
attribute encodes ``{providerId}/{version}``. The version is what ingestion
compares to decide whether a provider has published new data.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from biodiversity_ingest.errors import ArchiveParseError

logger = logging.getLogger(__name__)

EML_FILENAME = "eml.xml"

# packageId is {providerId}/{version}; provider ids may contain slashes
PACKAGE_ID_PATTERN = re.compile(r"^(.+)/(.+)$")


class ProviderMetadata(BaseModel):
    """Dataset metadata declared by a provider.

    Known fields are typed; any other dataset element (creator, abstract,
    keywordSet, ...) is kept as an extra attribute.

    Examples
    --------
    >>> meta = ProviderMetadata(id="abc-123", version="1.4", title="Flora")
    >>> meta.version
    '1.4'
    """

    id: str = Field(..., description="Provider-local dataset identifier")
    version: str = Field(..., description="Published version of the dataset")
    title: str | None = Field(None, description="Dataset title")
    alternate_identifiers: list[str] = Field(default_factory=list)
    pub_date: str | None = Field(None, description="Publication date as declared")
    language: str | None = None

    model_config = {"extra": "allow"}


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def element_to_value(element: ET.Element) -> Any:
    """Convert an XML element into plain text or a nested dict.

    Leaf elements become their stripped text. Elements with children become a
    dict; repeated child names become lists.
    """
    children = list(element)
    if not children:
        return (element.text or "").strip()
    result: dict[str, Any] = {}
    for child in children:
        name = _local_name(child.tag)
        value = element_to_value(child)
        if name in result:
            existing = result[name]
            if not isinstance(existing, list):
                result[name] = [existing]
            result[name].append(value)
        else:
            result[name] = value
    return result


def _as_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def split_package_id(package_id: str) -> tuple[str, str]:
    """Split a ``{providerId}/{version}`` package id.

    >>> split_package_id("br.gov.jbrj/lista_especies_flora/393.401")
    ('br.gov.jbrj/lista_especies_flora', '393.401')

    Raises:
        ArchiveParseError: If the value has no slash-separated version
    """
    match = PACKAGE_ID_PATTERN.match(package_id.strip())
    if not match:
        raise ArchiveParseError(f"Unrecognized EML packageId: {package_id!r}")
    return match.group(1), match.group(2)


def parse_eml(text: str | bytes) -> ProviderMetadata:
    """Parse EML content into provider metadata.

    Args:
        text: EML XML document

    Returns:
        ProviderMetadata with id and version from ``packageId`` plus dataset fields

    Raises:
        ArchiveParseError: If the XML is malformed or lacks a packageId
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ArchiveParseError(f"Malformed EML document: {e}") from e

    package_id = root.get("packageId")
    if not package_id:
        raise ArchiveParseError("EML document has no packageId")
    provider_id, version = split_package_id(package_id)

    dataset: dict[str, Any] = {}
    for child in root:
        if _local_name(child.tag) == "dataset":
            value = element_to_value(child)
            if isinstance(value, dict):
                dataset = value
            break

    alternate = dataset.pop("alternateIdentifier", [])
    if isinstance(alternate, str):
        alternate = [alternate]
    title = dataset.pop("title", None)
    if isinstance(title, list):
        title = title[0] if title else None
    title = _as_text(title)

    return ProviderMetadata(
        id=provider_id,
        version=version,
        title=title,
        alternate_identifiers=[a for a in alternate if isinstance(a, str) and a],
        pub_date=_as_text(dataset.pop("pubDate", None)),
        language=_as_text(dataset.pop("language", None)),
        **{key: value for key, value in dataset.items() if key not in ProviderMetadata.model_fields},
    )


def read_provider_metadata(path: Path | str) -> ProviderMetadata:
    """Read eml.xml from a file or an extracted archive directory."""
    path = Path(path)
    if path.is_dir():
        path = path / EML_FILENAME
    if not path.exists():
        raise ArchiveParseError(f"EML document not found: {path}")
    return parse_eml(path.read_bytes())
