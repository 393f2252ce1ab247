"""Tests for the per-bucket work queue."""
import threading
import time
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from herotrack.services.aggregation_service.work_queue import BucketWorkQueue
from herotrack.shared.models import Granularity, RollupKey

HOUR = datetime(2024, 3, 14, 10, tzinfo=timezone.utc)


def key(offset=0, scope="class-a"):
    return RollupKey(scope, None, Granularity.HOURLY, HOUR + timedelta(hours=offset))


@pytest.fixture
def queues():
    created = []
    yield created
    for queue in created:
        queue.shutdown(wait=True)


class TestCoalescing:
    def test_submit_while_running_reruns_once(self, queues):
        started = threading.Event()
        release = threading.Event()
        calls = Counter()

        def worker(k):
            calls[k] += 1
            started.set()
            release.wait(5)

        queue = BucketWorkQueue(worker, max_workers=2)
        queues.append(queue)

        assert queue.submit(key()) is True
        assert started.wait(5)
        assert queue.submit(key()) is False
        assert queue.submit(key()) is False
        release.set()

        assert queue.wait_idle(5)
        assert calls[key()] == 2

    def test_submit_while_pending_is_coalesced(self, queues):
        blocker_started = threading.Event()
        release = threading.Event()
        calls = Counter()

        def worker(k):
            calls[k] += 1
            if k == key(99):
                blocker_started.set()
                release.wait(5)

        queue = BucketWorkQueue(worker, max_workers=1)
        queues.append(queue)

        queue.submit(key(99))
        assert blocker_started.wait(5)
        assert queue.submit(key()) is True
        assert queue.submit(key()) is False
        assert queue.depth() == 2
        release.set()

        assert queue.wait_idle(5)
        assert calls[key()] == 1
        assert queue.depth() == 0


class TestSerialization:
    def test_one_recompute_per_bucket_at_a_time(self, queues):
        active = Counter()
        peak = Counter()
        lock = threading.Lock()

        def worker(k):
            with lock:
                active[k] += 1
                peak[k] = max(peak[k], active[k])
            time.sleep(0.002)
            with lock:
                active[k] -= 1

        queue = BucketWorkQueue(worker, max_workers=8)
        queues.append(queue)

        def producer():
            for i in range(50):
                queue.submit(key(i % 3))

        threads = [threading.Thread(target=producer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert queue.wait_idle(10)
        assert max(peak.values()) == 1
        assert queue.failed == 0

    def test_run_now_excludes_queued_recompute(self, queues):
        inside = threading.Event()
        release = threading.Event()
        order = []

        def worker(k):
            order.append("queued")

        def slow(k):
            inside.set()
            release.wait(5)
            order.append("run_now")
            return "done"

        queue = BucketWorkQueue(worker, max_workers=2)
        queues.append(queue)

        results = []
        caller = threading.Thread(target=lambda: results.append(queue.run_now(key(), slow)))
        caller.start()
        assert inside.wait(5)
        queue.submit(key())
        time.sleep(0.05)
        release.set()
        caller.join(5)

        assert queue.wait_idle(5)
        assert results == ["done"]
        assert order == ["run_now", "queued"]


class TestFailures:
    def test_failure_is_counted_and_queue_keeps_working(self, queues):
        def worker(k):
            if k == key(1):
                raise RuntimeError("boom")

        queue = BucketWorkQueue(worker, max_workers=2)
        queues.append(queue)

        queue.submit(key(1))
        queue.submit(key(2))

        assert queue.wait_idle(5)
        assert queue.failed == 1
        assert queue.completed == 1

    def test_submit_after_shutdown_raises(self):
        queue = BucketWorkQueue(lambda k: None)
        queue.shutdown()

        with pytest.raises(RuntimeError):
            queue.submit(key())


class TestBucketLocks:
    def test_locks_dropped_once_idle(self, queues):
        queue = BucketWorkQueue(lambda k: None, max_workers=4)
        queues.append(queue)

        for offset in range(50):
            queue.submit(key(offset))
        queue.run_now(key(100))

        assert queue.wait_idle(5)
        assert queue.completed == 50
        assert queue.lock_count() == 0

    def test_lock_kept_while_a_caller_waits(self, queues):
        inside = threading.Event()
        release = threading.Event()

        def slow(k):
            inside.set()
            release.wait(5)

        queue = BucketWorkQueue(lambda k: None, max_workers=2)
        queues.append(queue)

        caller = threading.Thread(target=lambda: queue.run_now(key(), slow))
        caller.start()
        assert inside.wait(5)
        queue.submit(key())
        time.sleep(0.05)

        assert queue.lock_count() == 1
        release.set()
        caller.join(5)
        assert queue.wait_idle(5)
        assert queue.lock_count() == 0
