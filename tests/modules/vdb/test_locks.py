from __future__ import annotations

import threading
import time

import pytest

from vecsync.modules.vdb.errors import TransientStorageError
from vecsync.modules.vdb.locks import KeyedLock, KeyedLockTimeoutError


def test_same_key_is_serialized() -> None:
    locks = KeyedLock()
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def _holder() -> None:
        with locks.hold(["k"]):
            order.append("first-in")
            entered.set()
            release.wait(timeout=5)
            order.append("first-out")

    def _waiter() -> None:
        with locks.hold(["k"]):
            order.append("second-in")

    first = threading.Thread(target=_holder)
    first.start()
    assert entered.wait(timeout=5)
    second = threading.Thread(target=_waiter)
    second.start()
    time.sleep(0.05)
    release.set()
    first.join()
    second.join()

    assert order == ["first-in", "first-out", "second-in"]
    assert locks.held_keys() == frozenset()


def test_distinct_keys_do_not_block() -> None:
    locks = KeyedLock(timeout=1.0)

    with locks.hold(["a"]):
        done = threading.Event()

        def _other() -> None:
            with locks.hold(["b"]):
                done.set()

        thread = threading.Thread(target=_other)
        thread.start()
        thread.join()

    assert done.is_set()


def test_timeout_raises_transient_error() -> None:
    locks = KeyedLock(timeout=0.05)
    failures: list[BaseException] = []

    def _contender() -> None:
        try:
            with locks.hold(["k"]):
                pass  # pragma: no cover - lock is held by the test
        except KeyedLockTimeoutError as exc:
            failures.append(exc)

    with locks.hold(["k", "other"]):
        thread = threading.Thread(target=_contender)
        thread.start()
        thread.join()
        assert locks.held_keys() == frozenset({"k", "other"})

    assert len(failures) == 1
    assert isinstance(failures[0], TransientStorageError)
    assert locks.held_keys() == frozenset()


def test_duplicate_keys_are_acquired_once() -> None:
    locks = KeyedLock(timeout=0.5)

    with locks.hold([1, 1, "1"]):
        assert locks.held_keys() == frozenset({1, "1"})


def test_hold_releases_on_error() -> None:
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        with locks.hold(["k"]):
            raise RuntimeError("boom")

    with locks.hold(["k"]):
        assert "k" in locks.held_keys()
