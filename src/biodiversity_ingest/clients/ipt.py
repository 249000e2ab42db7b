"""Client for Integrated Publishing Toolkit (IPT) providers.

An IPT serves each published resource at two URLs:

- ``{base}eml.do?r={tag}``: the EML metadata document (small)
- ``{base}archive.do?r={tag}``: the zipped Darwin Core Archive (can be huge)

Usage:
    with IptClient() as client:
        metadata = client.fetch_metadata(source)
        client.download_archive(client.archive_url(source), Path("/tmp/dwca.zip"))
"""

from __future__ import annotations

import csv
import logging
import time
from pathlib import Path
from urllib.parse import urlsplit

import requests
from pydantic import BaseModel, Field

from biodiversity_ingest.archive.eml import ProviderMetadata, parse_eml
from biodiversity_ingest.clients.base import DEFAULT_RATE_LIMIT_DELAY, HTTPClientBase, to_pipeline_error
from biodiversity_ingest.config import DEFAULT_DOWNLOAD_INACTIVITY_TIMEOUT, DEFAULT_VERSION_CHECK_TIMEOUT
from biodiversity_ingest.errors import TransportError

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Provider list CSV columns (Portuguese headers as published) and their aliases
SOURCE_COLUMN_ALIASES = {
    "name": ("nome", "name"),
    "repository": ("repositorio", "repository"),
    "kingdom": ("kingdom", "reino"),
    "tag": ("tag",),
    "url": ("url",),
}


class ProviderSource(BaseModel):
    """One resource published by an IPT, as listed in the provider CSV."""

    name: str = Field("", description="Human-readable resource name")
    repository: str = Field(..., description="Short name of the publishing IPT")
    kingdom: str = Field("", description="Kingdom(s) covered, comma separated")
    tag: str = Field(..., description="IPT resource short name (the r= parameter)")
    url: str = Field(..., description="IPT base URL ending in a slash")

    @property
    def label(self) -> str:
        return f"{self.repository}:{self.tag}"

    @property
    def base_url(self) -> str:
        """Scheme and host of the IPT, used to group resources by server."""
        parts = urlsplit(self.url)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
        return self.url


def _base(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


def load_provider_sources(csv_path: Path | str) -> list[ProviderSource]:
    """Read the provider list CSV.

    Rows missing a repository, tag, or URL are skipped.

    Args:
        csv_path: Path to a CSV with ``nome,repositorio,kingdom,tag,url`` columns

    Returns:
        Provider sources in file order
    """
    sources: list[ProviderSource] = []
    with open(csv_path, encoding="utf-8", newline="") as f:
        for row_num, row in enumerate(csv.DictReader(f), start=2):
            values: dict[str, str] = {}
            for field_name, aliases in SOURCE_COLUMN_ALIASES.items():
                for alias in aliases:
                    value = (row.get(alias) or "").strip()
                    if value:
                        values[field_name] = value
                        break
            if not all(values.get(key) for key in ("repository", "tag", "url")):
                logger.debug(f"Skipping incomplete provider row {row_num}")
                continue
            sources.append(ProviderSource(**values))
    logger.info(f"Loaded {len(sources)} provider sources from {csv_path}")
    return sources


class IptClient(HTTPClientBase):
    """HTTP client for IPT metadata and archive downloads."""

    def __init__(
        self,
        version_check_timeout: float = DEFAULT_VERSION_CHECK_TIMEOUT,
        inactivity_timeout: float = DEFAULT_DOWNLOAD_INACTIVITY_TIMEOUT,
        rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY,
        session: requests.Session | None = None,
    ):
        super().__init__(rate_limit_delay=rate_limit_delay, session=session)
        self.version_check_timeout = version_check_timeout
        self.inactivity_timeout = inactivity_timeout

    @staticmethod
    def metadata_url(source: ProviderSource) -> str:
        return f"{_base(source.url)}eml.do?r={source.tag}"

    @staticmethod
    def archive_url(source: ProviderSource) -> str:
        return f"{_base(source.url)}archive.do?r={source.tag}"

    def fetch_metadata_from(self, url: str) -> ProviderMetadata:
        """Fetch and parse an EML document within an absolute time limit.

        Args:
            url: URL of the EML document

        Returns:
            Parsed provider metadata

        Raises:
            ResourceNotFoundError: If the provider no longer serves the resource
            TransportError: On network failure or when the limit is exceeded
            ArchiveParseError: If the document is not valid EML
        """
        deadline = time.monotonic() + self.version_check_timeout
        response = self._get(url, timeout=self.version_check_timeout, stream=True)
        body = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                body.extend(chunk)
                if time.monotonic() > deadline:
                    raise TransportError(
                        f"Metadata request timed out after {self.version_check_timeout}s", url=url
                    )
        except requests.RequestException as e:
            raise to_pipeline_error(e, url) from e
        finally:
            response.close()
        return parse_eml(bytes(body))

    def fetch_metadata(self, source: ProviderSource) -> ProviderMetadata:
        """Fetch the EML metadata of a provider resource."""
        return self.fetch_metadata_from(self.metadata_url(source))

    def download_archive(self, url: str, dest: Path) -> Path:
        """Stream an archive to disk, aborting when the transfer stalls.

        The read timeout applies between received chunks, so a slow but steady
        download is never cut off while a silent connection is.

        Args:
            url: Archive URL
            dest: File to write

        Returns:
            The destination path

        Raises:
            ResourceNotFoundError: If the provider no longer serves the archive
            TransportError: On network failure or inactivity timeout
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        timeout = (self.inactivity_timeout, self.inactivity_timeout)
        response = self._get(url, timeout=timeout, stream=True)
        written = 0
        try:
            with open(dest, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        except requests.RequestException as e:
            dest.unlink(missing_ok=True)
            raise to_pipeline_error(e, url) from e
        finally:
            response.close()
        logger.info(f"Downloaded {written} bytes from {url}")
        return dest
