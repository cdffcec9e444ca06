from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from stock_reservation.errors import LockAcquireTimeout


class LockBackend(Protocol):
    """Minimal interface a keyed lock backend has to provide."""

    def acquire(self, key: str, timeout: Optional[float]) -> bool: ...
    def release(self, key: str) -> None: ...


class ThreadLockBackend:
    """
    In-process backend: one `threading.Lock` per key.

    Keys are business identifiers such as "stock:1" or "order:ORD...".
    Different keys never block each other. A key's lock lives only while
    somebody holds or waits for it, so the map does not grow with every id
    ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._locks: Dict[str, List[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]
            return entry[0]

    def acquire(self, key: str, timeout: Optional[float]) -> bool:
        lk = self._checkout(key)
        acquired = lk.acquire() if timeout is None else lk.acquire(timeout=timeout)
        if not acquired:
            self._checkin(key)
        return acquired

    def release(self, key: str) -> None:
        self._checkin(key).release()


class KeyedLocks:
    """Hands out keyed critical sections over one backend."""

    def __init__(self, backend: Optional[LockBackend] = None, timeout: Optional[float] = 3.0) -> None:
        self.backend: LockBackend = backend or ThreadLockBackend()
        self.timeout = timeout

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """
        Enter the critical section for `key`.

        Raises LockAcquireTimeout if the lock is not acquired within
        `self.timeout` seconds. The lock is released on every exit path.
        """
        if not self.backend.acquire(key, self.timeout):
            raise LockAcquireTimeout(f"Failed to acquire lock for key='{key}' within timeout={self.timeout}s")
        try:
            yield
        finally:
            self.backend.release(key)

    @contextmanager
    def hold_all(self, keys: Iterable[str]) -> Iterator[None]:
        # sorted order so two callers holding overlapping sets cannot deadlock
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield


class SharedExclusiveLock:
    """
    Many shared holders or one exclusive holder.

    A waiting exclusive holder blocks new shared holders, so a steady stream
    of shared callers cannot starve it.
    """

    def __init__(self, timeout: Optional[float] = 3.0) -> None:
        self.timeout = timeout
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False
        self._waiting_exclusive = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            ok = self._cond.wait_for(
                lambda: not self._exclusive and not self._waiting_exclusive, timeout=self.timeout
            )
            if not ok:
                raise LockAcquireTimeout(f"Failed to enter shared section within timeout={self.timeout}s")
            self._shared += 1
        try:
            yield
        finally:
            with self._cond:
                self._shared -= 1
                self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._waiting_exclusive += 1
            try:
                ok = self._cond.wait_for(lambda: not self._exclusive and self._shared == 0, timeout=self.timeout)
            finally:
                self._waiting_exclusive -= 1
            if not ok:
                self._cond.notify_all()
                raise LockAcquireTimeout(f"Failed to enter exclusive section within timeout={self.timeout}s")
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()
