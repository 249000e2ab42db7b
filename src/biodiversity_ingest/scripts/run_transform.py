#!/usr/bin/env python3
"""Transform raw documents into the normalized taxa or occurrences collection.

Usage:
    uv run python -m biodiversity_ingest.scripts.run_transform taxa
    uv run python -m biodiversity_ingest.scripts.run_transform occurrences --version abc123 --dry-run
"""

import logging
import sys

import click

from biodiversity_ingest.config import Settings, get_database, resolve_runner_id, resolve_version
from biodiversity_ingest.errors import LockAcquisitionError
from biodiversity_ingest.store.collections import LOCK_AUDIT_COLLECTION, PROCESS_LOCKS_COLLECTION
from biodiversity_ingest.store.locks import ProcessLockManager
from biodiversity_ingest.transform.runner import TRANSFORM_JOBS, run_transform

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )


@click.command()
@click.argument("domain", type=click.Choice(sorted(TRANSFORM_JOBS)))
@click.option("--version", "transform_version", help="Version stamp (default: TRANSFORM_VERSION or GITHUB_SHA)")
@click.option("--runner", "runner_id", help="Runner identity recorded on the lock and metrics")
@click.option("--force", is_flag=True, help="Take the transform lock even if another runner holds it")
@click.option("--dry-run", is_flag=True, help="Transform without writing anything")
@click.option("--batch-size", type=int, help="Raw documents per batch")
@click.option("--workers", type=int, help="Threads transforming each batch")
@click.option("--no-enrichment", is_flag=True, help="Skip enrichment from reference collections")
@click.option("--progress/--no-progress", default=True, help="Show a progress bar")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(
    domain: str,
    transform_version: str | None,
    runner_id: str | None,
    force: bool,
    dry_run: bool,
    batch_size: int | None,
    workers: int | None,
    no_enrichment: bool,
    progress: bool,
    verbose: bool,
) -> None:
    """Run the DOMAIN transform (taxa or occurrences)."""
    setup_logging(verbose)
    settings = Settings.from_env()
    version = resolve_version(transform_version, "TRANSFORM_VERSION")
    runner = resolve_runner_id(runner_id)

    db = get_database(settings)
    locks = ProcessLockManager(
        db[PROCESS_LOCKS_COLLECTION],
        db[LOCK_AUDIT_COLLECTION],
        default_timeout_seconds=settings.lock_timeout_seconds,
    )

    click.echo(f"Transforming {domain} at version {version} (runner {runner})")
    try:
        snapshot = run_transform(
            db,
            domain,
            locks,
            version=version,
            runner_id=runner,
            force=force,
            dry_run=dry_run,
            batch_size=batch_size or settings.transform_batch_size,
            workers=workers or settings.transform_workers,
            enrich=not no_enrichment,
            collector_parser=settings.collector_parser,
            show_progress=progress,
        )
    except LockAcquisitionError as e:
        active = e.active_lock or {}
        click.echo(f"ERROR: {e}")
        click.echo(f"  started: {active.get('started_at')}  last heartbeat: {active.get('updated_at')}")
        click.echo("  Use --force to take over a stuck lock")
        sys.exit(1)

    click.echo(
        f"processed={snapshot.records_processed} inserted={snapshot.records_inserted} "
        f"updated={snapshot.records_updated} failed={snapshot.records_failed}"
    )
    for key, count in sorted(snapshot.error_summary.items()):
        click.echo(f"  {key}: {count}")


if __name__ == "__main__":
    main()
