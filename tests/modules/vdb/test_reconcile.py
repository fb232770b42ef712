from __future__ import annotations

import threading

import pytest

from vecsync.modules.vdb import Document, IndexedDocument
from vecsync.modules.vdb.errors import MalformedFilterError
from vecsync.modules.vdb.reconcile import (
    Reconciler,
    logical_key,
    metadata_matches,
    plan_reconciliation,
)


def _indexed(identifier: str, content: str, **metadata: object) -> IndexedDocument:
    return IndexedDocument(
        id=identifier,
        version="1",
        page_content=content,
        metadata=dict(metadata),
    )


def test_plan_inserts_unknown_keys() -> None:
    candidate = Document("fresh", {"key": "a"})

    plan = plan_reconciliation([candidate], [], "key")

    assert plan.inserts == (candidate,)
    assert plan.delete_ids == ()
    assert not plan.is_noop


def test_plan_skips_when_content_and_metadata_match() -> None:
    candidate = Document("same", {"key": "a", "tag": "x"})
    existing = [_indexed("1", "same", key="a", tag="x", extra=True)]

    plan = plan_reconciliation([candidate], existing, "key")

    assert plan.is_noop
    assert plan.skipped_keys == ("a",)


def test_plan_replaces_on_metadata_drift() -> None:
    candidate = Document("same", {"key": "a", "tag": "y"})
    existing = [_indexed("1", "same", key="a", tag="x")]

    plan = plan_reconciliation([candidate], existing, "key")

    assert plan.delete_ids == ("1",)
    assert plan.inserts == (candidate,)


def test_plan_collapses_duplicates_around_a_matching_row() -> None:
    candidate = Document("current", {"key": "a"})
    existing = [
        _indexed("old", "stale", key="a"),
        _indexed("keep", "current", key="a"),
        _indexed("dup", "current", key="a"),
    ]

    plan = plan_reconciliation([candidate], existing, "key")

    assert plan.inserts == ()
    assert plan.skipped_keys == ("a",)
    assert set(plan.delete_ids) == {"old", "dup"}


def test_plan_keeps_last_candidate_per_key() -> None:
    first = Document("first", {"key": "a"})
    last = Document("last", {"key": "a"})

    plan = plan_reconciliation([first, last], [], "key")

    assert plan.inserts == (last,)


@pytest.mark.parametrize("value", [None, True, ["a"], {"nested": 1}])
def test_logical_key_requires_scalar(value: object) -> None:
    with pytest.raises(MalformedFilterError):
        logical_key(Document("x", {"key": value}), "key")


def test_metadata_matches_is_strict_and_partial() -> None:
    stored = {"key": "a", "n": 1, "flag": True, "tags": ["x", "y"], "o": {"p": 1}}

    assert metadata_matches(stored, {"key": "a"})
    assert metadata_matches(stored, {"tags": ["y"], "o": {}})
    assert metadata_matches(stored, {"n": 1.0})
    assert not metadata_matches(stored, {"n": True})
    assert not metadata_matches(stored, {"flag": 1})
    assert not metadata_matches(stored, {"n": "1"})
    assert not metadata_matches(stored, {"tags": ["z"]})
    assert not metadata_matches(stored, {"missing": None})


def test_reconcile_twice_writes_once(store, embeddings, monkeypatch) -> None:
    replaced: list[int] = []
    original = store.replace_documents

    def _recording(delete_ids, documents):
        replaced.append(len(documents))
        return original(delete_ids, documents)

    monkeypatch.setattr(store, "replace_documents", _recording)
    reconciler = Reconciler()
    candidate = Document("stable", {"key": "k1"})

    reconciler.reconcile(store, [candidate])
    outcome = reconciler.reconcile(store, [candidate])

    assert replaced == [1]
    assert outcome.skipped == 1
    assert embeddings.embedded_texts == 1
    assert store.count() == 1


def test_reconcile_empty_input_is_noop(store) -> None:
    outcome = Reconciler().reconcile(store, [])

    assert (outcome.inserted, outcome.deleted, outcome.skipped) == (0, 0, 0)


def test_reconcile_collapses_existing_duplicates(store) -> None:
    store.add_documents(
        [Document("dup", {"key": "k"}), Document("dup", {"key": "k"})]
    )

    outcome = store.upsert_documents([Document("dup", {"key": "k"})])

    assert outcome.deleted == 1
    assert outcome.inserted == 0
    assert store.count() == 1


def test_concurrent_upserts_for_one_key_leave_one_document(store) -> None:
    barrier = threading.Barrier(4)
    errors: list[BaseException] = []

    def _worker(index: int) -> None:
        barrier.wait()
        try:
            store.upsert_documents([Document(f"version {index}", {"key": "race"})])
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(store.find_documents([{"key": "race"}])) == 1
