import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

from igsp_hub.errors import Busy


class KeyedLock:
    """
    One mutex per key, created on demand and dropped when no thread holds or
    waits for it. Unrelated keys never contend.
    """

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float | None = None) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            acquired = lock.acquire(timeout=timeout if timeout is not None and timeout >= 0 else -1)
            if not acquired:
                raise Busy(f"{self.name} {key} is busy, retry with the same identifiers")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
