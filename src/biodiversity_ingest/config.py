"""Runtime configuration loaded from the environment.

Values come from process environment variables, with a ``.env`` file in the
working directory loaded first via python-dotenv. Defaults match the
production deployment.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv

if TYPE_CHECKING:
    from pymongo.database import Database

logger = logging.getLogger(__name__)

# MongoDB connection settings
DEFAULT_MONGODB_URI = "mongodb://localhost:27017"
DEFAULT_DB_NAME = "dwc2json"

# Locks are reclaimable once their heartbeat is older than this
DEFAULT_LOCK_TIMEOUT_SECONDS = 2 * 60 * 60

# Network timeouts (seconds)
DEFAULT_DOWNLOAD_INACTIVITY_TIMEOUT = 10.0
DEFAULT_VERSION_CHECK_TIMEOUT = 15.0

# Batch sizes
DEFAULT_ARCHIVE_BATCH_SIZE = 5000
DEFAULT_TRANSFORM_BATCH_SIZE = 10000
DEFAULT_TRANSFORM_WORKERS = 8
DEFAULT_CONCURRENCY_LIMIT = 10

# Archives larger than this many core rows go through the batched join
DEFAULT_BATCHED_THRESHOLD = 200_000

DEFAULT_VERSION = "local-dev"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={value!r}, using {default}")
        return default


def resolve_runner_id(explicit: str | None = None) -> str:
    """Identify the machine or CI job running this process."""
    if explicit:
        return explicit
    for name in ("GITHUB_RUN_ID", "RUNNER_NAME", "RUN_ID", "HOSTNAME"):
        value = os.getenv(name)
        if value:
            return value
    return socket.gethostname() or "unknown-runner"


def resolve_version(explicit: str | None = None, *env_names: str) -> str:
    """Resolve a pipeline version from an explicit value or environment variables.

    Args:
        explicit: Version passed on the command line, takes precedence
        *env_names: Environment variables to try, in order

    Returns:
        The first non-empty value, ``GITHUB_SHA``, or ``local-dev``
    """
    if explicit:
        return explicit
    for name in (*env_names, "GITHUB_SHA"):
        value = os.getenv(name)
        if value:
            return value
    return DEFAULT_VERSION


@dataclass
class Settings:
    """Configuration shared by the ingestion and transform pipelines."""

    mongodb_uri: str = DEFAULT_MONGODB_URI
    db_name: str = DEFAULT_DB_NAME
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    download_inactivity_timeout: float = DEFAULT_DOWNLOAD_INACTIVITY_TIMEOUT
    version_check_timeout: float = DEFAULT_VERSION_CHECK_TIMEOUT
    archive_batch_size: int = DEFAULT_ARCHIVE_BATCH_SIZE
    batched_threshold: int = DEFAULT_BATCHED_THRESHOLD
    transform_batch_size: int = DEFAULT_TRANSFORM_BATCH_SIZE
    transform_workers: int = DEFAULT_TRANSFORM_WORKERS
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT
    collector_parser: str | None = None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> Settings:
        """Build settings from environment variables.

        Args:
            dotenv: Load a ``.env`` file before reading the environment

        Returns:
            Settings with environment overrides applied
        """
        if dotenv:
            load_dotenv()
        return cls(
            mongodb_uri=os.getenv("MONGO_URI") or os.getenv("MONGODB_URI") or DEFAULT_MONGODB_URI,
            db_name=os.getenv("MONGO_DB_NAME", DEFAULT_DB_NAME),
            lock_timeout_seconds=_env_int("LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS),
            download_inactivity_timeout=_env_float(
                "DOWNLOAD_INACTIVITY_TIMEOUT", DEFAULT_DOWNLOAD_INACTIVITY_TIMEOUT
            ),
            version_check_timeout=_env_float("VERSION_CHECK_TIMEOUT", DEFAULT_VERSION_CHECK_TIMEOUT),
            archive_batch_size=_env_int("ARCHIVE_BATCH_SIZE", DEFAULT_ARCHIVE_BATCH_SIZE),
            batched_threshold=_env_int("BATCHED_THRESHOLD", DEFAULT_BATCHED_THRESHOLD),
            transform_batch_size=_env_int("TRANSFORM_BATCH_SIZE", DEFAULT_TRANSFORM_BATCH_SIZE),
            transform_workers=_env_int("TRANSFORM_WORKERS", DEFAULT_TRANSFORM_WORKERS),
            concurrency_limit=_env_int("CONCURRENCY_LIMIT", DEFAULT_CONCURRENCY_LIMIT),
            collector_parser=os.getenv("COLLECTOR_PARSER_MODULE") or None,
        )


def get_database(settings: Settings) -> Database[dict[str, Any]]:
    """Connect to MongoDB and return the configured database.

    Raises:
        pymongo.errors.ConnectionFailure: If the server cannot be reached
    """
    from pymongo import MongoClient

    client: MongoClient[dict[str, Any]] = MongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=5000)
    client.admin.command("ping")
    logger.info(f"Connected to MongoDB database '{settings.db_name}'")
    return client[settings.db_name]
