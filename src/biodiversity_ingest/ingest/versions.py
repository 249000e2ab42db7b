"""Decide which providers have published a new dataset version."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from biodiversity_ingest.archive.eml import ProviderMetadata
from biodiversity_ingest.clients.ipt import IptClient, ProviderSource
from biodiversity_ingest.config import DEFAULT_CONCURRENCY_LIMIT
from biodiversity_ingest.errors import ErrorCategory, IngestError, classify_exception

if TYPE_CHECKING:
    from pymongo.collection import Collection

logger = logging.getLogger(__name__)


@dataclass
class PendingProvider:
    """A provider resource whose remote version differs from the stored one."""

    index: int
    source: ProviderSource
    metadata: ProviderMetadata


@dataclass
class VersionCheckResult:
    pending: list[PendingProvider] = field(default_factory=list)
    up_to_date: list[ProviderSource] = field(default_factory=list)
    retired: list[ProviderSource] = field(default_factory=list)
    offline_hosts: set[str] = field(default_factory=set)


class OfflineHosts:
    """Thread-safe set of IPT hosts that failed at the transport level."""

    def __init__(self, hosts: set[str] | None = None):
        self._hosts = set(hosts or ())
        self._lock = threading.Lock()

    def add(self, host: str) -> None:
        with self._lock:
            if host not in self._hosts:
                logger.warning(f"IPT server {host} appears to be offline; skipping its remaining resources")
            self._hosts.add(host)

    def __contains__(self, host: object) -> bool:
        with self._lock:
            return host in self._hosts

    def snapshot(self) -> set[str]:
        with self._lock:
            return set(self._hosts)


def check_provider_version(
    index: int,
    source: ProviderSource,
    client: IptClient,
    providers_collection: Collection[dict[str, Any]],
    offline: OfflineHosts,
) -> tuple[str, PendingProvider | None]:
    """Fetch one provider's metadata and compare its version with the stored one.

    Returns:
        Tuple of (state, pending) where state is ``pending``, ``current``,
        ``retired``, ``offline`` or ``error``
    """
    if source.base_url in offline:
        logger.info(f"Skipping {source.label}: {source.base_url} already failed")
        return "offline", None

    try:
        metadata = client.fetch_metadata(source)
    except IngestError as e:
        category = classify_exception(e)
        if category is ErrorCategory.NOT_FOUND:
            logger.info(f"Resource {source.label} no longer exists (404); skipping")
            return "retired", None
        if category is ErrorCategory.TRANSPORT:
            offline.add(source.base_url)
            return "offline", None
        logger.error(f"Could not read metadata of {source.label}: {e}")
        return "error", None

    existing = providers_collection.find_one({"_id": metadata.id}, {"version": 1})
    if existing and existing.get("version") == metadata.version:
        logger.debug(f"{source.label} already on version {metadata.version}")
        return "current", None
    return "pending", PendingProvider(index=index, source=source, metadata=metadata)


def check_provider_versions(
    sources: list[ProviderSource],
    client: IptClient,
    providers_collection: Collection[dict[str, Any]],
    max_workers: int = DEFAULT_CONCURRENCY_LIMIT,
    offline: OfflineHosts | None = None,
) -> VersionCheckResult:
    """Check every provider's published version with bounded concurrency.

    Args:
        sources: Providers to check, in the order they should be ingested
        client: IPT client
        providers_collection: Stored provider records (``ipts``)
        max_workers: Maximum concurrent metadata requests
        offline: Hosts already known to be offline; updated in place

    Returns:
        VersionCheckResult with pending providers in input order
    """
    offline = offline if offline is not None else OfflineHosts()
    result = VersionCheckResult()

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [
            pool.submit(check_provider_version, index, source, client, providers_collection, offline)
            for index, source in enumerate(sources)
        ]
        outcomes = [future.result() for future in futures]

    for source, (state, pending) in zip(sources, outcomes, strict=True):
        if pending is not None:
            result.pending.append(pending)
        elif state == "current":
            result.up_to_date.append(source)
        elif state == "retired":
            result.retired.append(source)

    result.pending.sort(key=lambda p: p.index)
    result.offline_hosts = offline.snapshot()
    logger.info(
        f"Version check: {len(result.pending)} pending, {len(result.up_to_date)} current, "
        f"{len(result.retired)} retired, {len(result.offline_hosts)} offline hosts"
    )
    return result
