import threading
import time

import pytest

from scholaris.core.exceptions import ConcurrencyError, ValidationError
from scholaris.services import ConcurrencyManager, LockType


@pytest.fixture
def manager():
    manager = ConcurrencyManager(max_workers=3, lock_timeout=0.2)
    yield manager
    manager.cleanup()


def test_readers_share_writers_exclude(manager):
    manager.acquire_lock("semester:a", LockType.READ, "r1")
    manager.acquire_lock("semester:a", LockType.READ, "r2")
    assert len(manager.get_lock_info("semester:a")) == 2
    with pytest.raises(ConcurrencyError) as excinfo:
        manager.acquire_lock("semester:a", LockType.WRITE, "w1")
    assert excinfo.value.error_code == "lock_timeout"


def test_lock_is_reentrant_for_same_holder(manager):
    with manager.lock("semester:a", LockType.WRITE, holder_id="op"):
        with manager.lock("semester:a", LockType.WRITE, holder_id="op"):
            assert len(manager.get_holder_locks("op")) == 2
    assert manager.get_lock_info("semester:a") == []


def test_waiter_gets_lock_after_release():
    manager = ConcurrencyManager(max_workers=1, lock_timeout=5.0)
    try:
        lock_id = manager.acquire_lock("semester:a", LockType.WRITE, "first")
        acquired = threading.Event()

        def wait_for_lock():
            with manager.lock("semester:a", LockType.WRITE, holder_id="second"):
                acquired.set()

        waiter = threading.Thread(target=wait_for_lock)
        waiter.start()
        time.sleep(0.1)
        assert not acquired.is_set()
        manager.release_lock(lock_id)
        waiter.join(timeout=5)
        assert acquired.is_set()
    finally:
        manager.cleanup()


def test_different_resources_do_not_contend(manager):
    manager.acquire_lock("semester:a", LockType.WRITE, "op-a")
    with manager.lock("semester:b", LockType.WRITE, holder_id="op-b"):
        pass


def test_map_bounded_keeps_order_and_bounds_parallelism(manager):
    active, peak = [0], [0]
    guard = threading.Lock()

    def work(n):
        with guard:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.02)
        with guard:
            active[0] -= 1
        return n * n

    assert manager.map_bounded(work, range(10)) == [n * n for n in range(10)]
    assert peak[0] <= manager.max_workers


def test_map_bounded_reraises_after_all_tasks(manager):
    done = []

    def work(n):
        if n == 0:
            raise ValueError("boom")
        done.append(n)
        return n

    with pytest.raises(ValueError):
        manager.map_bounded(work, range(5))
    assert sorted(done) == [1, 2, 3, 4]


def test_rejects_empty_pool():
    with pytest.raises(ValidationError):
        ConcurrencyManager(max_workers=0)
