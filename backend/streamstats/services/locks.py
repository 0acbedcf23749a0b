"""In-process striped locks keyed by arbitrary hashable keys."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class StripedLock:
    """Fixed pool of locks; keys hash onto a stripe so memory stays bounded."""

    def __init__(self, stripes: int = 256) -> None:
        self._locks = [threading.Lock() for _ in range(max(1, int(stripes)))]

    def _lock_for(self, key: Hashable) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    @contextmanager
    def hold(self, key: Hashable, timeout: float = -1) -> Iterator[bool]:
        lock = self._lock_for(key)
        acquired = lock.acquire(timeout=timeout)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
