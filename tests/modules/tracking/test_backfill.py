from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from vecsync.modules.tracking import (
    BackfillCoordinator,
    BackfillReport,
    DocumentSynthesizer,
    SqliteEntitySource,
    TrackingSpec,
)
from vecsync.modules.vdb import Document


@pytest.fixture
def rows_db(tmp_path: Path) -> Path:
    path = tmp_path / "rows.db"
    connection = sqlite3.connect(path)
    connection.execute("CREATE TABLE entity (id INTEGER PRIMARY KEY, text TEXT)")
    connection.executemany(
        "INSERT INTO entity VALUES (?, ?)",
        [(index, f"row {index}") for index in range(1, 6)],
    )
    connection.commit()
    connection.close()
    return path


@pytest.fixture
def coordinator_for(make_store, rows_db: Path):
    store = make_store(document_primary_key="id", chunk_size=2)

    def _build(**kwargs) -> BackfillCoordinator:
        return BackfillCoordinator(
            store=store,
            source=SqliteEntitySource(database=rows_db, table="entity"),
            synthesizer=DocumentSynthesizer(
                TrackingSpec(["text"]),
                document_key=store.key_field,
            ),
            **kwargs,
        )

    _build.store = store  # type: ignore[attr-defined]
    return _build


def test_backfill_indexes_only_missing_rows(coordinator_for, embeddings) -> None:
    store = coordinator_for.store
    store.add_documents([Document("row 2", {"id": 2}), Document("row 4", {"id": 4})])
    embeddings.calls.clear()

    report = coordinator_for().backfill()

    assert report == BackfillReport(missing=3, inserted=3, skipped=0, pages=2)
    assert store.count() == 5
    embedded = {text for call in embeddings.calls for text in call}
    assert embedded == {"row 1", "row 3", "row 5"}


def test_second_backfill_is_a_noop(coordinator_for, embeddings) -> None:
    coordinator = coordinator_for(page_size=10)
    first = coordinator.backfill()
    calls = len(embeddings.calls)

    second = coordinator.backfill()

    assert first.inserted == 5
    assert first.pages == 1
    assert second == BackfillReport()
    assert len(embeddings.calls) == calls


def test_start_runs_in_background(coordinator_for) -> None:
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = coordinator_for().start(executor)
        report = future.result(timeout=10)

    assert report.inserted == 5
    assert coordinator_for.store.count() == 5


def test_start_without_executor_returns_future(coordinator_for) -> None:
    report = coordinator_for().start().result(timeout=10)

    assert report.missing == 5


def test_background_failure_resolves_to_none(coordinator_for, embeddings) -> None:
    embeddings.fail_on.add("row 3")

    future = coordinator_for().start()

    assert future.result(timeout=10) is None


def test_page_size_must_be_positive(coordinator_for) -> None:
    with pytest.raises(ValueError):
        coordinator_for(page_size=0)
