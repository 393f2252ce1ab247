"""Single-instance guard for retention runs.

With PostgreSQL the guard is a session-level advisory lock held on one
pooled connection for the whole run, so only one executor across every
host can run at a time. Without a database it is a process-wide lock.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from herotrack.shared.database import ConnectionManager
from herotrack.shared.errors import RetentionLockBusy

logger = logging.getLogger(__name__)

_local_locks: Dict[int, threading.Lock] = {}
_local_locks_guard = threading.Lock()


def _local_lock(lock_id: int) -> threading.Lock:
    with _local_locks_guard:
        if lock_id not in _local_locks:
            _local_locks[lock_id] = threading.Lock()
        return _local_locks[lock_id]


class RetentionLock:
    """Non-blocking exclusive lock."""

    def __init__(self, lock_id: int, connection_manager: Optional[ConnectionManager] = None):
        self.lock_id = lock_id
        self.connection_manager = connection_manager

    @contextmanager
    def hold(self):
        """Hold the lock for the duration of the block.

        Raises:
            RetentionLockBusy: If another run holds it
        """
        if self.connection_manager is None:
            lock = _local_lock(self.lock_id)
            if not lock.acquire(blocking=False):
                raise RetentionLockBusy(f"Retention lock {self.lock_id} is held")
            try:
                yield
            finally:
                lock.release()
            return

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_try_advisory_lock(%s)", (self.lock_id,))
                acquired = bool(cur.fetchone()[0])
            conn.commit()
            if not acquired:
                raise RetentionLockBusy(f"Advisory lock {self.lock_id} is held")

            logger.debug("RETENTION_LOCK_ACQUIRED", extra={"lock_id": self.lock_id})
            try:
                yield
            finally:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(%s)", (self.lock_id,))
                conn.commit()
                logger.debug("RETENTION_LOCK_RELEASED", extra={"lock_id": self.lock_id})
