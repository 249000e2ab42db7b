#!/usr/bin/env python3
"""Ingest every provider resource listed in a CSV into the raw collections.

Metadata of all providers is checked concurrently; only resources that
published a new version are downloaded and written.

Usage:
    uv run python -m biodiversity_ingest.scripts.ingest_occurrences -s referencias/occurrences.csv
    uv run python -m biodiversity_ingest.scripts.ingest_occurrences -s referencias/fauna.csv --domain taxa
"""

import logging
import sys
from pathlib import Path

import click

from biodiversity_ingest.clients.ipt import IptClient, load_provider_sources
from biodiversity_ingest.config import Settings, get_database, resolve_runner_id, resolve_version
from biodiversity_ingest.ingest.raw import DOMAINS, OCCURRENCES_DOMAIN
from biodiversity_ingest.ingest.runner import ingest_providers
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
@click.option(
    "--sources",
    "-s",
    "sources_csv",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="CSV listing provider resources (nome, repositorio, kingdom, tag, url)",
)
@click.option(
    "--domain",
    type=click.Choice(list(DOMAINS)),
    default=OCCURRENCES_DOMAIN,
    show_default=True,
    help="Kind of records the resources publish",
)
@click.option("--version", "ingest_version", help="Ingestion version recorded on metrics")
@click.option("--runner", "runner_id", help="Runner identity recorded on locks and metrics")
@click.option("--force-lock", is_flag=True, help="Take provider locks even if held by another runner")
@click.option("--progress/--no-progress", default=True, help="Show progress bars")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(
    sources_csv: Path,
    domain: str,
    ingest_version: str | None,
    runner_id: str | None,
    force_lock: bool,
    progress: bool,
    verbose: bool,
) -> None:
    """Ingest all changed provider resources listed in SOURCES."""
    setup_logging(verbose)
    settings = Settings.from_env()

    sources = load_provider_sources(sources_csv)
    if not sources:
        click.echo("No provider sources found")
        return

    db = get_database(settings)
    locks = ProcessLockManager(
        db[PROCESS_LOCKS_COLLECTION],
        db[LOCK_AUDIT_COLLECTION],
        default_timeout_seconds=settings.lock_timeout_seconds,
    )
    locks.ensure_indexes()

    with IptClient(
        version_check_timeout=settings.version_check_timeout,
        inactivity_timeout=settings.download_inactivity_timeout,
    ) as client:
        summary = ingest_providers(
            db,
            client,
            locks,
            sources,
            domain=domain,
            runner_id=resolve_runner_id(runner_id),
            version=resolve_version(ingest_version, "INGEST_VERSION"),
            max_workers=settings.concurrency_limit,
            batched_threshold=settings.batched_threshold,
            batch_size=settings.archive_batch_size,
            force_lock=force_lock,
            show_progress=progress,
        )

    click.echo(f"Succeeded: {len(summary.succeeded)}")
    click.echo(f"Skipped:   {len(summary.skipped)}")
    click.echo(f"Failed:    {len(summary.failed)}")
    for host in sorted(summary.offline_hosts):
        click.echo(f"  offline: {host}")
    if not summary.ok:
        for label in summary.failed:
            click.echo(f"  failed: {label}")
        sys.exit(1)


if __name__ == "__main__":
    main()
