"""Per-server mutexes.

There is no global lock: each server id gets its own ``threading.Lock`` so
operations on different servers never block one another.
"""

import threading
from contextlib import contextmanager
from typing import Iterator


class ServerLocks:
    """Registry handing out one lock per server id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, server_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(server_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[server_id] = lock
            return lock

    @contextmanager
    def hold(self, server_id: str) -> Iterator[None]:
        """Hold the lock for ``server_id`` for the duration of the block."""
        lock = self.get(server_id)
        with lock:
            yield

    def discard(self, server_id: str) -> None:
        """Forget the lock of a deleted server. Holders keep their reference."""
        with self._guard:
            self._locks.pop(server_id, None)
