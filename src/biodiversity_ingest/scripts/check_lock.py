#!/usr/bin/env python3
"""Show process locks, or force-release a stuck one.

Usage:
    uv run python -m biodiversity_ingest.scripts.check_lock
    uv run python -m biodiversity_ingest.scripts.check_lock transform_taxa
    uv run python -m biodiversity_ingest.scripts.check_lock transform_taxa --force --reason "runner died"
"""

import logging
import sys

import click

from biodiversity_ingest.config import Settings, get_database
from biodiversity_ingest.store.collections import LOCK_AUDIT_COLLECTION, PROCESS_LOCKS_COLLECTION
from biodiversity_ingest.store.locks import LockDocument, ProcessLockManager

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )


def describe(lock: LockDocument) -> str:
    state = "live" if lock.is_live() else lock.status
    line = (
        f"{lock.resource}: {state} (runner {lock.runner_id or '?'}, "
        f"heartbeat {lock.updated_at}, expires {lock.expires_at})"
    )
    if lock.forced:
        line += " [forced]"
    if lock.error_message:
        line += f"\n    error: {lock.error_message}"
    return line


@click.command()
@click.argument("resource", required=False)
@click.option("--active", is_flag=True, help="Only list live locks")
@click.option("--force", is_flag=True, help="Force-release RESOURCE")
@click.option("--reason", default="manual force release", show_default=True, help="Reason recorded on the lock")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(resource: str | None, active: bool, force: bool, reason: str, verbose: bool) -> None:
    """Report lock status for RESOURCE, or for every lock when omitted."""
    setup_logging(verbose)
    settings = Settings.from_env()
    db = get_database(settings)
    locks = ProcessLockManager(db[PROCESS_LOCKS_COLLECTION], db[LOCK_AUDIT_COLLECTION])

    if force:
        if not resource:
            click.echo("ERROR: --force requires a RESOURCE")
            sys.exit(2)
        released = locks.force_release(resource, reason)
        if released is None:
            click.echo(f"No lock found for {resource}")
            sys.exit(1)
        click.echo(describe(released))
        return

    if resource:
        lock = locks.get_status(resource)
        if lock is None:
            click.echo(f"No lock found for {resource}")
            return
        click.echo(describe(lock))
        return

    found = locks.list_locks(active_only=active)
    if not found:
        click.echo("No locks")
    for lock in found:
        click.echo(describe(lock))


if __name__ == "__main__":
    main()
