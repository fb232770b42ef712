"""In-process mutexes keyed by logical document key."""

from __future__ import annotations

import threading
import time
from collections.abc import Hashable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from .errors import TransientStorageError

__all__ = ["KeyedLock", "KeyedLockTimeoutError"]


class KeyedLockTimeoutError(TransientStorageError):
    """Raised when a key lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    waiters: int = 0


def _sort_key(key: Hashable) -> tuple[str, str]:
    return (type(key).__name__, str(key))


@dataclass(slots=True)
class KeyedLock:
    """Serialize work per key while unrelated keys proceed concurrently.

    Keys are acquired in a stable order so two callers holding overlapping
    key sets cannot deadlock. Entries are reference counted and dropped once
    no caller holds or waits on them.
    """

    timeout: float | None = None
    _guard: threading.Lock = field(
        init=False,
        default_factory=threading.Lock,
        repr=False,
    )
    _entries: dict[Hashable, _Entry] = field(
        init=False,
        default_factory=dict,
        repr=False,
    )

    @contextmanager
    def hold(self, keys: Iterable[Hashable]) -> Iterator[None]:
        """Hold the locks for every key in ``keys`` for the block."""

        ordered = sorted(set(keys), key=_sort_key)
        deadline = (
            None if self.timeout is None else time.monotonic() + self.timeout
        )
        acquired: list[Hashable] = []
        try:
            for key in ordered:
                self._acquire(key, deadline)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def held_keys(self) -> frozenset[Hashable]:
        """Return keys currently tracked (held or awaited)."""

        with self._guard:
            return frozenset(self._entries)

    def _acquire(self, key: Hashable, deadline: float | None) -> None:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.waiters += 1

        if deadline is None:
            entry.lock.acquire()
            return

        remaining = max(deadline - time.monotonic(), 0.0)
        if entry.lock.acquire(timeout=remaining):
            return

        self._forget(key, entry)
        raise KeyedLockTimeoutError(
            f"Timed out waiting for the lock on key {key!r}"
        )

    def _release(self, key: Hashable) -> None:
        with self._guard:
            entry = self._entries[key]
        entry.lock.release()
        self._forget(key, entry)

    def _forget(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.waiters -= 1
            if entry.waiters == 0 and self._entries.get(key) is entry:
                del self._entries[key]
