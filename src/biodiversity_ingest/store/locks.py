"""Process locks stored in MongoDB.

One document per resource name (``transform_taxa``, ``ingest_occurrences:<provider>``,
...) records who holds the resource, when it last sent a heartbeat, and when
the lock expires. Acquisition is a single ``find_one_and_update`` with
``upsert=True`` keyed on ``_id``:

- no document: the upsert inserts a fresh ``running`` lock
- a document that is not ``running``, or whose expiry has passed: it matches
  the filter and is overwritten
- a live ``running`` document: the filter misses, the upsert collides on
  ``_id`` and MongoDB raises ``DuplicateKeyError``

so at most one caller can hold a live lock at any instant.

Usage:
    locks = ProcessLockManager(db[PROCESS_LOCKS_COLLECTION], db[LOCK_AUDIT_COLLECTION])
    with locks.hold("transform_taxa", runner_id="gh-123") as lock:
        ...
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from biodiversity_ingest.config import DEFAULT_LOCK_TIMEOUT_SECONDS
from biodiversity_ingest.errors import LockAcquisitionError

if TYPE_CHECKING:
    from pymongo.collection import Collection

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # pymongo returns naive datetimes unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass
class LockDocument:
    """A lock as stored in the lock collection."""

    resource: str
    status: str
    holder_id: str
    started_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None
    ended_at: datetime | None = None
    runner_id: str | None = None
    timeout_seconds: int | None = None
    error_message: str | None = None
    forced: bool = False

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> LockDocument:
        return cls(
            resource=doc.get("resource") or doc["_id"],
            status=doc.get("status", ""),
            holder_id=doc.get("holder_id", ""),
            started_at=_as_utc(doc.get("started_at")),
            updated_at=_as_utc(doc.get("updated_at")),
            expires_at=_as_utc(doc.get("expires_at")),
            ended_at=_as_utc(doc.get("ended_at")),
            runner_id=doc.get("runner_id"),
            timeout_seconds=doc.get("timeout_seconds"),
            error_message=doc.get("error_message"),
            forced=bool(doc.get("forced", False)),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _utcnow())

    def is_live(self, now: datetime | None = None) -> bool:
        """True if the lock is running and its expiry has not passed."""
        return self.status == LockStatus.RUNNING.value and not self.is_expired(now)


class ProcessLockManager:
    """Acquire, heartbeat, and release process locks.

    Construct one per process and pass it to whatever needs locking.

    Args:
        collection: Lock collection, one document per resource
        audit_collection: Optional append-only log of lock operations
        default_timeout_seconds: Expiry window applied when acquire gives none
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        collection: Collection[dict[str, Any]],
        audit_collection: Collection[dict[str, Any]] | None = None,
        default_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.collection = collection
        self.audit_collection = audit_collection
        self.default_timeout_seconds = default_timeout_seconds
        self.clock = clock

    def ensure_indexes(self) -> None:
        self.collection.create_index("status")
        if self.audit_collection is not None:
            self.audit_collection.create_index([("resource", 1), ("at", -1)])

    # =========================================================================
    # Lock lifecycle
    # =========================================================================

    def acquire(
        self,
        resource: str,
        *,
        runner_id: str | None = None,
        holder_id: str | None = None,
        force: bool = False,
        timeout_seconds: int | None = None,
    ) -> LockDocument:
        """Take the lock for ``resource``.

        Args:
            resource: Logical resource name
            runner_id: Identity of the machine or job, for operators
            holder_id: Token identifying this acquisition; generated if omitted
            force: Take the lock even if another holder's lock is live
            timeout_seconds: Expiry window measured from the last heartbeat

        Returns:
            The new lock

        Raises:
            LockAcquisitionError: If a live lock is held by someone else
        """
        now = self.clock()
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
        holder_id = holder_id or str(uuid.uuid4())

        query: dict[str, Any] = {"_id": resource}
        if not force:
            query["$or"] = [
                {"status": {"$ne": LockStatus.RUNNING.value}},
                {"expires_at": {"$lte": now}},
            ]
        update = {
            "$set": {
                "resource": resource,
                "status": LockStatus.RUNNING.value,
                "holder_id": holder_id,
                "runner_id": runner_id,
                "started_at": now,
                "updated_at": now,
                "expires_at": now + timedelta(seconds=timeout),
                "timeout_seconds": timeout,
                "forced": force,
            },
            "$unset": {"error_message": "", "ended_at": ""},
        }

        try:
            doc = self.collection.find_one_and_update(
                query, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            doc = None

        if doc is None:
            active = self.collection.find_one({"_id": resource})
            self._audit("acquire_rejected", resource, holder_id, runner_id=runner_id)
            logger.warning(f"Lock '{resource}' is held by {(active or {}).get('runner_id') or 'unknown runner'}")
            raise LockAcquisitionError(resource, active)

        lock = LockDocument.from_document(doc)
        self._audit("acquired", resource, holder_id, runner_id=runner_id, forced=force)
        logger.info(f"Acquired lock '{resource}' (holder {holder_id}{', forced' if force else ''})")
        return lock

    def refresh(self, resource: str, holder_id: str) -> LockDocument | None:
        """Record a heartbeat and push the expiry forward.

        Returns:
            The refreshed lock, or None if ``holder_id`` no longer holds it
        """
        current = self.collection.find_one({"_id": resource, "holder_id": holder_id})
        if current is None:
            return None
        now = self.clock()
        timeout = current.get("timeout_seconds") or self.default_timeout_seconds
        doc = self.collection.find_one_and_update(
            {"_id": resource, "holder_id": holder_id},
            {"$set": {"updated_at": now, "expires_at": now + timedelta(seconds=timeout)}},
            return_document=ReturnDocument.AFTER,
        )
        return LockDocument.from_document(doc) if doc else None

    def release(
        self,
        resource: str,
        holder_id: str,
        status: LockStatus | str = LockStatus.COMPLETED,
        error: BaseException | str | None = None,
    ) -> LockDocument | None:
        """Mark the lock held by ``holder_id`` as completed or failed.

        Returns:
            The released lock, or None if ``holder_id`` no longer holds it
        """
        status = LockStatus(status)
        if status is LockStatus.RUNNING:
            raise ValueError("release status must be completed or failed")
        now = self.clock()
        fields: dict[str, Any] = {"status": status.value, "updated_at": now, "ended_at": now}
        if status is LockStatus.FAILED and error is not None:
            fields["error_message"] = str(error) or type(error).__name__
        update: dict[str, Any] = {"$set": fields}
        if status is LockStatus.COMPLETED:
            update["$unset"] = {"forced": ""}

        doc = self.collection.find_one_and_update(
            {"_id": resource, "holder_id": holder_id},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.warning(f"Lock '{resource}' was no longer held by {holder_id} at release")
            return None
        self._audit("released", resource, holder_id, status=status.value)
        logger.info(f"Released lock '{resource}' as {status.value}")
        return LockDocument.from_document(doc)

    def force_release(self, resource: str, reason: str) -> LockDocument | None:
        """Mark a lock failed regardless of its holder.

        The holder id is replaced so the previous holder's release becomes a no-op.

        Returns:
            The updated lock, or None if no lock exists for ``resource``
        """
        now = self.clock()
        doc = self.collection.find_one_and_update(
            {"_id": resource},
            {
                "$set": {
                    "status": LockStatus.FAILED.value,
                    "error_message": reason,
                    "updated_at": now,
                    "ended_at": now,
                    "holder_id": str(uuid.uuid4()),
                    "forced": True,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        self._audit("force_released", resource, doc["holder_id"], reason=reason)
        logger.warning(f"Force-released lock '{resource}': {reason}")
        return LockDocument.from_document(doc)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_status(self, resource: str) -> LockDocument | None:
        doc = self.collection.find_one({"_id": resource})
        return LockDocument.from_document(doc) if doc else None

    def list_locks(self, active_only: bool = False) -> list[LockDocument]:
        """List locks, optionally only live ones."""
        query: dict[str, Any] = {}
        if active_only:
            query = {"status": LockStatus.RUNNING.value, "expires_at": {"$gt": self.clock()}}
        return [LockDocument.from_document(doc) for doc in self.collection.find(query).sort("_id", 1)]

    # =========================================================================
    # Scoped locking
    # =========================================================================

    @contextmanager
    def hold(self, resource: str, **acquire_kwargs: Any) -> Iterator[LockDocument]:
        """Hold a lock for the duration of a ``with`` block.

        The lock is released as ``completed`` on normal exit and as ``failed``
        with the error text when the block raises; the error is re-raised.
        """
        lock = self.acquire(resource, **acquire_kwargs)
        try:
            yield lock
        except BaseException as e:
            try:
                self.release(resource, lock.holder_id, LockStatus.FAILED, e)
            except PyMongoError as release_error:
                # The expiry lets a later run reclaim the lock
                logger.error(f"Could not release lock '{resource}' after failure: {release_error}")
            raise
        self.release(resource, lock.holder_id, LockStatus.COMPLETED)

    def with_lock(self, resource: str, fn: Callable[[LockDocument], T], **acquire_kwargs: Any) -> T:
        """Run ``fn`` while holding the lock for ``resource``."""
        with self.hold(resource, **acquire_kwargs) as lock:
            return fn(lock)

    # =========================================================================
    # Audit
    # =========================================================================

    def _audit(self, action: str, resource: str, holder_id: str, **details: Any) -> None:
        if self.audit_collection is None:
            return
        entry = {
            "resource": resource,
            "action": action,
            "holder_id": holder_id,
            "at": self.clock(),
            **{key: value for key, value in details.items() if value is not None},
        }
        try:
            self.audit_collection.insert_one(entry)
        except PyMongoError as e:
            logger.warning(f"Failed to write lock audit entry for '{resource}': {e}")
