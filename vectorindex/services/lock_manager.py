import os
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

GLOBAL_RESOURCE = "*"
DEFAULT_LOCK_TIMEOUT = timedelta(hours=1)


@dataclass
class Lock:
    resource_key: str
    job_id: str
    acquired_at: datetime
    owner: str

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        return now - self.acquired_at >= timeout


class LockManager:
    """
    Advisory, process-local mutual exclusion for indexing jobs.

    One global lock (at most one indexing job at a time) plus one lock per
    document. Locks older than `lock_timeout` are treated as abandoned and
    reclaimed. Nothing here survives a restart or coordinates between
    separate processes.
    """

    def __init__(self, lock_timeout: timedelta = DEFAULT_LOCK_TIMEOUT, owner: Optional[str] = None):
        self.lock_timeout = lock_timeout
        self.owner = owner or str(os.getpid())
        self._locks: Dict[str, Lock] = {}
        # Guards _locks; never held across an await since every method is synchronous
        self._mutex = threading.RLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _acquire(self, resource_key: str, job_id: str) -> bool:
        with self._mutex:
            self._cleanup_expired_locked()
            held = self._locks.get(resource_key)
            if held is not None:
                logger.info(f"Resource {resource_key} is already locked by job {held.job_id}")
                return False

            self._locks[resource_key] = Lock(
                resource_key=resource_key,
                job_id=job_id,
                acquired_at=self._now(),
                owner=self.owner,
            )
            logger.info(f"Acquired lock for {resource_key} (job {job_id})")
            return True

    def _release(self, resource_key: str, job_id: Optional[str] = None) -> bool:
        with self._mutex:
            held = self._locks.get(resource_key)
            if held is None:
                return False
            if job_id is not None and held.job_id != job_id:
                logger.info(
                    f"Not releasing lock for {resource_key}: held by job {held.job_id}, not {job_id}"
                )
                return False
            del self._locks[resource_key]
            logger.info(f"Released lock for {resource_key} (job {held.job_id})")
            return True

    def _is_locked(self, resource_key: str) -> bool:
        with self._mutex:
            held = self._locks.get(resource_key)
            if held is None:
                return False
            if held.is_expired(self._now(), self.lock_timeout):
                logger.warning(f"Lock for {resource_key} (job {held.job_id}) has timed out, releasing")
                del self._locks[resource_key]
                return False
            return True

    # Global lock

    def acquire_global(self, job_id: str) -> bool:
        return self._acquire(GLOBAL_RESOURCE, job_id)

    def release_global(self, job_id: Optional[str] = None) -> bool:
        """Release the global lock. With `job_id`, only if that job holds it. Idempotent."""
        return self._release(GLOBAL_RESOURCE, job_id)

    def is_globally_locked(self) -> bool:
        return self._is_locked(GLOBAL_RESOURCE)

    # Per-document locks

    def acquire_file(self, file_id: str, job_id: str) -> bool:
        if file_id == GLOBAL_RESOURCE:
            raise ValueError(f"'{GLOBAL_RESOURCE}' is reserved for the global lock")
        return self._acquire(file_id, job_id)

    def release_file(self, file_id: str, job_id: Optional[str] = None) -> bool:
        """Release a document lock. With `job_id`, only if that job holds it. Idempotent."""
        return self._release(file_id, job_id)

    def is_file_locked(self, file_id: str) -> bool:
        return self._is_locked(file_id)

    def get_lock(self, resource_key: str) -> Optional[Lock]:
        with self._mutex:
            return self._locks.get(resource_key)

    def get_all_locks(self) -> List[Lock]:
        """Per-document locks currently held (the global lock is excluded)."""
        with self._mutex:
            return [lock for key, lock in self._locks.items() if key != GLOBAL_RESOURCE]

    # Maintenance

    def _cleanup_expired_locked(self) -> int:
        now = self._now()
        expired = [key for key, lock in self._locks.items() if lock.is_expired(now, self.lock_timeout)]
        for key in expired:
            logger.warning(f"Lock for {key} (job {self._locks[key].job_id}) expired")
            del self._locks[key]
        return len(expired)

    def cleanup_expired(self) -> int:
        """Drop every lock older than the timeout. Returns how many were removed."""
        with self._mutex:
            cleaned = self._cleanup_expired_locked()
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired locks")
        return cleaned

    def force_release_all(self) -> int:
        with self._mutex:
            count = len(self._locks)
            self._locks.clear()
        logger.warning(f"Force released {count} locks")
        return count
