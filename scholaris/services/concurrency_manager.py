"""
Concurrency management: named advisory locks and the bounded worker pool.
"""

import logging
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, Future
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, TypeVar

from ..core.exceptions import ConcurrencyError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class LockType(Enum):
    """Types of locks available."""
    READ = "read"
    WRITE = "write"


@dataclass
class LockInfo:
    """Information about a held lock."""
    lock_id: str
    resource_id: str
    lock_type: LockType
    holder_id: str
    acquired_at: float


class ConcurrencyManager:
    """Blocking reader/writer locks keyed by resource name, plus a worker pool.

    Locks are advisory and in-process: a resource such as ``semester:<id>``
    serializes release and un-release of that semester while leaving every
    other resource untouched.
    """

    def __init__(self, max_workers: int = 10, lock_timeout: float = 30.0):
        if max_workers < 1:
            raise ValidationError(f"max_workers must be at least 1, got {max_workers}")
        self._max_workers = max_workers
        self._lock_timeout = lock_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scholaris-worker")
        self._locks: Dict[str, Dict[LockType, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self._lock_holders: Dict[str, LockInfo] = {}
        self._condition = threading.Condition(threading.RLock())

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def acquire_lock(self, resource_id: str, lock_type: LockType,
                     holder_id: str, timeout: Optional[float] = None) -> str:
        """Acquire a lock on a resource, waiting up to ``timeout`` seconds."""
        wait_for = self._lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait_for
        with self._condition:
            while not self._can_acquire_lock(resource_id, lock_type, holder_id):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ConcurrencyError(
                        f"Timed out acquiring {lock_type.value} lock on {resource_id}",
                        error_code="lock_timeout",
                        details={"resource_id": resource_id, "holder_id": holder_id},
                    )
                self._condition.wait(remaining)

            lock_id = str(uuid.uuid4())
            self._locks[resource_id][lock_type].add(lock_id)
            self._lock_holders[lock_id] = LockInfo(
                lock_id=lock_id,
                resource_id=resource_id,
                lock_type=lock_type,
                holder_id=holder_id,
                acquired_at=time.time(),
            )
            return lock_id

    def release_lock(self, lock_id: str) -> bool:
        """Release a lock."""
        with self._condition:
            lock_info = self._lock_holders.pop(lock_id, None)
            if lock_info is None:
                return False

            resource_locks = self._locks[lock_info.resource_id]
            resource_locks[lock_info.lock_type].discard(lock_id)
            if not resource_locks[lock_info.lock_type]:
                del resource_locks[lock_info.lock_type]
            if not resource_locks:
                del self._locks[lock_info.resource_id]

            self._condition.notify_all()
            return True

    def _can_acquire_lock(self, resource_id: str, lock_type: LockType, holder_id: str) -> bool:
        """Check if a lock can be acquired."""
        existing_locks = self._locks.get(resource_id)
        if not existing_locks:
            return True

        # Re-entrant for the same holder
        for lock_ids in existing_locks.values():
            for lock_id in lock_ids:
                if self._lock_holders[lock_id].holder_id == holder_id:
                    return True

        if lock_type == LockType.READ:
            return LockType.WRITE not in existing_locks
        return False

    @contextmanager
    def lock(self, resource_id: str, lock_type: LockType,
             holder_id: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[str]:
        """Context manager for acquiring and releasing locks."""
        holder = holder_id or f"thread_{threading.get_ident()}"
        lock_id = self.acquire_lock(resource_id, lock_type, holder, timeout)
        try:
            yield lock_id
        finally:
            self.release_lock(lock_id)

    def get_lock_info(self, resource_id: str) -> List[LockInfo]:
        """Get information about all locks on a resource."""
        with self._condition:
            locks = []
            for lock_ids in self._locks.get(resource_id, {}).values():
                for lock_id in lock_ids:
                    locks.append(self._lock_holders[lock_id])
            return locks

    def get_holder_locks(self, holder_id: str) -> List[LockInfo]:
        """Get all locks held by a specific holder."""
        with self._condition:
            return [info for info in self._lock_holders.values() if info.holder_id == holder_id]

    def submit(self, func: Callable[..., R], *args: Any, **kwargs: Any) -> "Future[R]":
        """Schedule one task on the worker pool."""
        return self._executor.submit(func, *args, **kwargs)

    def map_bounded(self, func: Callable[[T], R], items: Iterable[T]) -> List[R]:
        """Run ``func`` over ``items`` on the worker pool; results keep input order.

        An exception escaping ``func`` is re-raised here once every task has
        finished, so callers that need per-item isolation must catch inside
        ``func``.
        """
        futures = [self._executor.submit(func, item) for item in items]
        results = []
        first_error: Optional[BaseException] = None
        for future in futures:
            try:
                results.append(future.result())
            except Exception as e:
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
        return results

    def cleanup(self):
        """Clean up resources."""
        self._executor.shutdown(wait=True)
