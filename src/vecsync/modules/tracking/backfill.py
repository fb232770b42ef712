"""One-shot catch-up indexing of rows missing from an index."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from vecsync.core.logging import Logger, get_logger
from vecsync.modules.vdb.models import Document
from vecsync.modules.vdb.reconcile import logical_key
from vecsync.modules.vdb.store import VectorIndexStore

from .source import EntitySource
from .synthesizer import DocumentSynthesizer

__all__ = ["BackfillCoordinator", "BackfillReport"]


@dataclass(frozen=True, slots=True)
class BackfillReport:
    """Counters describing a completed backfill run."""

    missing: int = 0
    inserted: int = 0
    skipped: int = 0
    pages: int = 0


def _pages(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass(slots=True)
class BackfillCoordinator:
    """Index every source row that has no document yet.

    The missing set is computed inside the database. Rows are hydrated page
    by page and checked again under their key locks right before insertion,
    so a concurrent tracker write for the same key is never duplicated.
    Present rows are never re-embedded.
    """

    store: VectorIndexStore
    source: EntitySource
    synthesizer: DocumentSynthesizer
    page_size: int | None = None
    logger: Logger | None = field(default=None)

    def __post_init__(self) -> None:
        if self.page_size is not None and self.page_size < 1:
            raise ValueError("page_size must be >= 1")
        if self.logger is None:
            self.logger = get_logger(
                __name__,
                component="backfill",
                table=self.store.table_name,
            )

    def backfill(self) -> BackfillReport:
        """Run the backfill synchronously and return its report."""

        missing = self.source.missing_keys(self.store)
        if not missing:
            self.logger.info("backfill-noop")
            return BackfillReport()

        size = self.page_size or self.store.chunk_size
        inserted = skipped = pages = 0
        for page in _pages(missing, size):
            entities = self.source.fetch_many(page)
            documents = [self.synthesizer.synthesize(entity) for entity in entities]
            written, passed = self._insert_absent(documents)
            inserted += written
            skipped += passed + (len(page) - len(entities))
            pages += 1
            self.logger.debug(
                "backfill-page",
                page=pages,
                size=len(page),
                inserted=written,
            )

        report = BackfillReport(
            missing=len(missing),
            inserted=inserted,
            skipped=skipped,
            pages=pages,
        )
        self.logger.info(
            "backfill-complete",
            missing=report.missing,
            inserted=report.inserted,
            skipped=report.skipped,
            pages=report.pages,
        )
        return report

    def start(
        self,
        executor: Executor | None = None,
    ) -> Future[BackfillReport | None]:
        """Run :meth:`backfill` in the background and return immediately.

        Failures are logged as ``backfill-failed`` and resolve the future to
        ``None``; they never propagate into the caller.
        """

        if executor is not None:
            return executor.submit(self._run_logged)
        pool = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"vecsync-backfill-{self.store.table_name}",
        )
        try:
            return pool.submit(self._run_logged)
        finally:
            pool.shutdown(wait=False)

    def _run_logged(self) -> BackfillReport | None:
        try:
            return self.backfill()
        except Exception as exc:
            self.logger.error(
                "backfill-failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    def _insert_absent(self, documents: Sequence[Document]) -> tuple[int, int]:
        key_field = self.store.key_field
        by_key: dict[Any, Document] = {}
        for document in documents:
            by_key[logical_key(document, key_field)] = document
        if not by_key:
            return 0, 0

        with self.store.locks.hold(by_key):
            present = {
                indexed.metadata.get(key_field)
                for indexed in self.store.find_by_logical_keys(list(by_key))
            }
            absent = [
                document for key, document in by_key.items() if key not in present
            ]
            if absent:
                self.store.add_documents(absent)
        return len(absent), len(by_key) - len(absent)
