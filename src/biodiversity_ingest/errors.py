"""Error categories and exceptions for the ingestion and transform pipelines.

Every failure the pipelines care about falls into one of a closed set of
categories. Callers switch on :class:`ErrorCategory` rather than on exception
messages; the only place that inspects message text is
:func:`classify_exception`, which adapts third-party exceptions (``requests``,
``pymongo``, ``sqlite3``) into a category.
"""

from __future__ import annotations

import enum
import sqlite3
from typing import Any

import requests
from pymongo.errors import PyMongoError


class ErrorCategory(enum.Enum):
    """Closed set of failure categories."""

    TRANSPORT = "transport"  # provider offline, timeout, connection reset
    NOT_FOUND = "not_found"  # resource gone (HTTP 404/410)
    PARSE = "parse"  # archive manifest or store query failure
    RECORD = "record"  # single record could not be processed
    WRITE = "write"  # document store write failure
    LOCK = "lock"  # lock held by another runner


class IngestError(Exception):
    """Base class for all pipeline errors."""

    category: ErrorCategory = ErrorCategory.RECORD


class TransportError(IngestError):
    """Network-level failure talking to a provider."""

    category = ErrorCategory.TRANSPORT

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class ResourceNotFoundError(IngestError):
    """The provider answered but the resource does not exist."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ArchiveParseError(IngestError):
    """The archive manifest is missing or malformed."""

    category = ErrorCategory.PARSE


class BatchedJoinError(IngestError):
    """A query against the embedded store failed."""

    category = ErrorCategory.PARSE


class RecordError(IngestError):
    """A single record could not be processed."""

    category = ErrorCategory.RECORD


class IdentifierError(RecordError):
    """A record is missing the fields needed for a deterministic identifier."""


class WriteError(IngestError):
    """A bulk write to the document store failed."""

    category = ErrorCategory.WRITE


class LockAcquisitionError(IngestError):
    """Raised when a process lock is held by another runner.

    Attributes:
        resource: Name of the contended resource
        active_lock: The lock document currently holding the resource, if known
    """

    category = ErrorCategory.LOCK

    def __init__(self, resource: str, active_lock: dict[str, Any] | None = None):
        holder = (active_lock or {}).get("runner_id") or "unknown runner"
        super().__init__(f"Lock for '{resource}' is held by {holder}")
        self.resource = resource
        self.active_lock = active_lock


# Substrings seen in transport-level error messages from sockets, DNS and
# proxies when the exception type itself is not informative.
TRANSPORT_MESSAGE_MARKERS = (
    "timed out",
    "timeout",
    "connection",
    "econnreset",
    "enotfound",
    "econnrefused",
    "name or service not known",
    "temporary failure in name resolution",
    "remote end closed",
)

NOT_FOUND_STATUS_CODES = frozenset({404, 410})


def classify_exception(exc: BaseException) -> ErrorCategory | None:
    """Map an exception to an error category.

    Pipeline exceptions carry their own category. Third-party exceptions are
    classified by type first; message text is only consulted as a last resort.

    Args:
        exc: The exception to classify

    Returns:
        The matching category, or None if the exception is not recognized
    """
    if isinstance(exc, IngestError):
        return exc.category

    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        if status in NOT_FOUND_STATUS_CODES:
            return ErrorCategory.NOT_FOUND
        return ErrorCategory.TRANSPORT
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.TRANSPORT
    if isinstance(exc, requests.RequestException):
        return ErrorCategory.TRANSPORT

    if isinstance(exc, sqlite3.Error):
        return ErrorCategory.PARSE
    if isinstance(exc, PyMongoError):
        return ErrorCategory.WRITE

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSPORT

    message = str(exc).lower()
    if any(marker in message for marker in TRANSPORT_MESSAGE_MARKERS):
        return ErrorCategory.TRANSPORT
    return None


def is_transport_failure(exc: BaseException) -> bool:
    """Return True if the exception means the provider host is unreachable."""
    return classify_exception(exc) is ErrorCategory.TRANSPORT
