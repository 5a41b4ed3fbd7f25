"""Named locks that serialise actions which must not run concurrently."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List

logger = logging.getLogger(__name__)


class LockRegistry:
    """Lazily created mutexes keyed by name.

    Entries are never removed. The table itself is guarded by ``_guard``,
    which is independent of the named locks.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __contains__(self, name: str) -> bool:
        with self._guard:
            return name in self._locks

    def acquire_all(self, names: Iterable[str]) -> List[str]:
        """Block until every named lock is held.

        Names are acquired in sorted order so that two callers with
        overlapping sets cannot deadlock. Returns the names actually held.
        """

        ordered = sorted(set(names))
        for name in ordered:
            lock = self._lock_for(name)
            if not lock.acquire(blocking=False):
                logger.debug("Waiting for lock %r", name)
                lock.acquire()
        return ordered

    def release_all(self, names: Iterable[str]) -> None:
        ordered = sorted(set(names), reverse=True)
        with self._guard:
            held = [self._locks[name] for name in ordered if name in self._locks]
        for lock in held:
            lock.release()

    @contextmanager
    def hold(self, names: Iterable[str]) -> Iterator[List[str]]:
        held = self.acquire_all(names)
        try:
            yield held
        finally:
            self.release_all(held)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock
