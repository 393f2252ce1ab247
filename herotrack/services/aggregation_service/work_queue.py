"""In-process work queue keyed by rollup bucket.

At most one recompute of a given bucket runs at a time; different buckets
recompute in parallel on a thread pool. A bucket submitted while it is
already waiting is coalesced into the waiting job, and a bucket submitted
while it is running is run once more afterwards so the late events are
picked up.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Set, TypeVar

from herotrack.shared.models import RollupKey

logger = logging.getLogger(__name__)

R = TypeVar('R')


class BucketWorkQueue:
    """Thread-pool work queue with per-bucket serialization."""

    def __init__(
        self,
        worker: Callable[[RollupKey], Any],
        max_workers: int = 4,
    ):
        """Initialize queue.

        Args:
            worker: Called with a bucket key; recomputes that bucket
            max_workers: Size of the thread pool
        """
        self._worker = worker
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="rollup-worker"
        )
        self._state = threading.Condition()
        self._pending: Set[RollupKey] = set()
        self._running: Set[RollupKey] = set()
        self._dirty: Set[RollupKey] = set()
        self._key_locks: Dict[RollupKey, threading.Lock] = {}
        self._lock_users: Dict[RollupKey, int] = {}
        self._closed = False
        self.completed = 0
        self.failed = 0

        logger.info("ROLLUP_WORK_QUEUE_STARTED", extra={"max_workers": max_workers})

    @contextmanager
    def _bucket_lock(self, key: RollupKey):
        """Hold the bucket's lock; it is dropped once no thread holds or awaits it."""
        with self._state:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._state:
                self._lock_users[key] -= 1
                if not self._lock_users[key]:
                    del self._lock_users[key]
                    del self._key_locks[key]

    def lock_count(self) -> int:
        with self._state:
            return len(self._key_locks)

    def submit(self, key: RollupKey) -> bool:
        """Schedule a recompute of ``key``.

        Returns:
            True if a new job was queued, False if coalesced into an
            existing one
        """
        with self._state:
            if self._closed:
                raise RuntimeError("Work queue is shut down")
            if key in self._pending:
                return False
            if key in self._running:
                self._dirty.add(key)
                return False
            self._pending.add(key)
        self._executor.submit(self._run, key)
        return True

    def run_now(self, key: RollupKey, fn: Optional[Callable[[RollupKey], R]] = None) -> R:
        """Run ``fn`` (default: the worker) for ``key`` on the calling thread.

        Holds the bucket's lock, so it never overlaps a queued recompute of
        the same bucket.
        """
        with self._bucket_lock(key):
            return (fn or self._worker)(key)

    def _run(self, key: RollupKey) -> None:
        with self._state:
            self._pending.discard(key)
            self._running.add(key)

        try:
            with self._bucket_lock(key):
                self._worker(key)
            with self._state:
                self.completed += 1
        except Exception as e:
            # The stale sweep picks the bucket up again
            with self._state:
                self.failed += 1
            logger.error(
                "ROLLUP_RECOMPUTE_FAILED",
                extra={"bucket": key.partition_key(), "error": str(e)}
            )
        finally:
            with self._state:
                self._running.discard(key)
                rerun = key in self._dirty and not self._closed
                self._dirty.discard(key)
                if rerun:
                    self._pending.add(key)
                self._state.notify_all()
            if rerun:
                self._executor.submit(self._run, key)

    def depth(self) -> int:
        """Buckets waiting or being recomputed."""
        with self._state:
            return len(self._pending | self._running)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no bucket is waiting or running.

        Returns:
            False if the timeout expired first
        """
        with self._state:
            return self._state.wait_for(
                lambda: not self._pending and not self._running, timeout=timeout
            )

    def shutdown(self, wait: bool = True) -> None:
        with self._state:
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.info(
            "ROLLUP_WORK_QUEUE_STOPPED",
            extra={"completed": self.completed, "failed": self.failed}
        )
