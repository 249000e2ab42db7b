#!/usr/bin/env python3
"""Ingest a single IPT resource into the raw collections.

Usage:
    uv run python -m biodiversity_ingest.scripts.ingest_archive \\
        --url https://ipt.jbrj.gov.br/jbrj/ --tag lista_especies_flora_brasil --repository jbrj
    uv run python -m biodiversity_ingest.scripts.ingest_archive ... --domain occurrences --batched
"""

import logging
import sys

import click

from biodiversity_ingest.clients.ipt import IptClient, ProviderSource
from biodiversity_ingest.config import Settings, get_database, resolve_runner_id, resolve_version
from biodiversity_ingest.errors import ErrorCategory, IngestError, classify_exception
from biodiversity_ingest.ingest.raw import DOMAINS, TAXA_DOMAIN
from biodiversity_ingest.ingest.runner import IngestOutcome, ingest_provider
from biodiversity_ingest.ingest.versions import PendingProvider
from biodiversity_ingest.store.collections import LOCK_AUDIT_COLLECTION, PROCESS_LOCKS_COLLECTION
from biodiversity_ingest.store.locks import ProcessLockManager

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )


@click.command()
@click.option("--url", required=True, help="IPT base URL, e.g. https://ipt.example.org/")
@click.option("--tag", required=True, help="IPT resource short name")
@click.option("--repository", required=True, help="Short name of the publishing IPT")
@click.option("--kingdom", default="", help="Kingdom(s) covered by the resource")
@click.option("--domain", type=click.Choice(list(DOMAINS)), default=TAXA_DOMAIN, show_default=True)
@click.option("--batched/--in-memory", default=None, help="Force the join mode (default: by archive size)")
@click.option("--batch-size", type=int, help="Records per batch in batched mode")
@click.option("--version", "ingest_version", help="Ingestion version recorded on metrics")
@click.option("--runner", "runner_id", help="Runner identity recorded on locks and metrics")
@click.option("--force-lock", is_flag=True, help="Take the provider lock even if held by another runner")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(
    url: str,
    tag: str,
    repository: str,
    kingdom: str,
    domain: str,
    batched: bool | None,
    batch_size: int | None,
    ingest_version: str | None,
    runner_id: str | None,
    force_lock: bool,
    verbose: bool,
) -> None:
    """Download one archive and write its records as raw documents.

    Exits 0 when the resource no longer exists (404); the provider retired it.
    """
    setup_logging(verbose)
    settings = Settings.from_env()
    source = ProviderSource(name=tag, repository=repository, kingdom=kingdom, tag=tag, url=url)

    with IptClient(
        version_check_timeout=settings.version_check_timeout,
        inactivity_timeout=settings.download_inactivity_timeout,
    ) as client:
        try:
            metadata = client.fetch_metadata(source)
        except IngestError as e:
            if classify_exception(e) is ErrorCategory.NOT_FOUND:
                click.echo(f"Resource {source.label} no longer exists; nothing to ingest")
                return
            click.echo(f"ERROR: {e}")
            sys.exit(1)

        db = get_database(settings)
        locks = ProcessLockManager(
            db[PROCESS_LOCKS_COLLECTION],
            db[LOCK_AUDIT_COLLECTION],
            default_timeout_seconds=settings.lock_timeout_seconds,
        )
        outcome = ingest_provider(
            db,
            client,
            locks,
            PendingProvider(index=0, source=source, metadata=metadata),
            domain=domain,
            runner_id=resolve_runner_id(runner_id),
            version=resolve_version(ingest_version, "INGEST_VERSION"),
            batched=batched,
            batched_threshold=settings.batched_threshold,
            batch_size=batch_size or settings.archive_batch_size,
            force_lock=force_lock,
            show_progress=True,
        )

    click.echo(f"{source.label}: {outcome.value}")
    if outcome in (IngestOutcome.FAILED, IngestOutcome.OFFLINE, IngestOutcome.LOCKED):
        sys.exit(1)


if __name__ == "__main__":
    main()
