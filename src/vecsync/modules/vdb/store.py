"""SQLite-backed vector index store.

One table per logical index holds ``(id, version, page_content, metadata,
embedding, dim)`` rows. Metadata is a JSON document queried through
``json_extract``/``json_type``/``json_each``; embeddings are little-endian
float32 blobs scored with FAISS at query time.

Every operation opens its own connection. No connection is held across an
embedding provider call.
"""

from __future__ import annotations

import heapq
import json
import re
import sqlite3
from collections.abc import Hashable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from vecsync.core.logging import Logger, get_logger

from .errors import (
    ConfigurationError,
    EmbeddingProviderError,
    MalformedFilterError,
    TransientStorageError,
    VectorStoreError,
)
from .faiss_index import FaissScoringError, nearest_neighbours
from .filters import (
    Predicate,
    build_containment_predicate,
    build_filter_set_predicate,
    json_path,
)
from .locks import KeyedLock
from .models import (
    Document,
    IndexedDocument,
    decode_embedding,
    encode_embedding,
    is_finite_distance,
)
from .providers import (
    EmbeddingProviderModel,
    EmbeddingsProvider,
    EmbedRequestOptions,
)
from .reconcile import ReconcileOutcome, Reconciler
from .uuid7 import new_document_id

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from vecsync.core.config import VectorStoreSettings

__all__ = ["VectorIndexStore", "DocumentInput"]

DocumentInput = Document | Mapping[str, Any]

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_IN_CLAUSE_LIMIT = 500
_COLUMNS = "id, version, page_content, metadata"


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _coerce_document(value: DocumentInput) -> Document:
    if isinstance(value, Document):
        return value
    if isinstance(value, Mapping):
        return Document.from_mapping(value)
    raise TypeError(f"Unsupported document payload: {type(value)!r}")


class VectorIndexStore:
    """Owns one index table and every read or write against it."""

    def __init__(
        self,
        embeddings: EmbeddingsProvider | None,
        settings: "VectorStoreSettings",
        *,
        model: str,
        provider_key: str = "custom",
        batch_size: int | None = None,
        locks: KeyedLock | None = None,
        reconciler: Reconciler | None = None,
        logger: Logger | None = None,
    ) -> None:
        if embeddings is None:
            raise ConfigurationError("An embeddings provider is required.")
        table = settings.table_name
        if not isinstance(table, str) or not _TABLE_NAME.match(table):
            raise ConfigurationError(
                f"Invalid table name {table!r}; use letters, digits and "
                "underscores only."
            )
        try:
            key_path = json_path([settings.document_primary_key])
        except MalformedFilterError as exc:
            raise ConfigurationError(
                "Invalid document_primary_key "
                f"{settings.document_primary_key!r}: {exc}"
            ) from exc
        connection = settings.connection
        if connection is None or connection.database is None:
            raise ConfigurationError(
                f"No database configured for vector table {table!r}."
            )
        if str(connection.database) == ":memory:":
            raise ConfigurationError(
                "In-memory databases are not supported; every operation "
                "opens a fresh connection."
            )
        if settings.filter is not None:
            try:
                self._default_predicate = build_containment_predicate(
                    settings.filter
                )
            except MalformedFilterError as exc:
                raise ConfigurationError(
                    f"Invalid default filter for table {table!r}: {exc}"
                ) from exc
        else:
            self._default_predicate = Predicate.always()

        self.embeddings = embeddings
        self.settings = settings
        self.model = model
        self.provider_key = provider_key
        self.locks = locks or KeyedLock()
        self.logger = logger or get_logger(
            __name__,
            component="vector-store",
            table=table,
        )
        self._database = Path(connection.database)
        self._timeout = connection.timeout
        self._batch_size = batch_size or settings.chunk_size
        self._table = f'"{table}"'
        self._key_expression = (
            "json_extract(metadata, '{}')".format(key_path.replace("'", "''"))
        )
        self._reconciler = reconciler

    @classmethod
    def open(
        cls,
        embeddings: EmbeddingsProvider | None,
        settings: "VectorStoreSettings",
        **kwargs: Any,
    ) -> "VectorIndexStore":
        """Construct a store and make sure its table exists."""

        store = cls(embeddings, settings, **kwargs)
        store.ensure_index()
        return store

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def table_name(self) -> str:
        return self.settings.table_name

    @property
    def key_field(self) -> str:
        return self.settings.document_primary_key

    @property
    def version(self) -> str:
        return self.settings.version

    @property
    def chunk_size(self) -> int:
        return self.settings.chunk_size

    @property
    def database(self) -> Path:
        return self._database

    def embedding_model(self) -> EmbeddingProviderModel:
        """Describe the configured embedding model.

        Raises:
            EmbeddingProviderError: If the provider cannot resolve the model.
        """

        try:
            return self.embeddings.describe_model(self.model)
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            raise self._embedding_error(
                f"Cannot describe embedding model {self.model!r}",
                exc,
            ) from exc

    def indexed_dimension(self) -> int | None:
        """Return the dimension of stored embeddings, ``None`` when empty."""

        with self._session("dimension") as connection:
            row = connection.execute(
                f"SELECT dim FROM {self._table} LIMIT 1"
            ).fetchone()
        return None if row is None else int(row["dim"])

    def logical_key_expression(self) -> str:
        """Return the SQL expression extracting the logical key column."""

        return self._key_expression

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    def ensure_index(self) -> None:
        """Create the index table and its logical-key index if missing."""

        self._database.parent.mkdir(parents=True, exist_ok=True)
        index_name = f'"{self.table_name}_logical_key_idx"'
        with self._session("ensure") as connection:
            connection.execute("PRAGMA journal_mode = WAL")
            with connection:
                connection.execute(
                    f"CREATE TABLE IF NOT EXISTS {self._table} ("
                    "id TEXT PRIMARY KEY, "
                    "version TEXT NOT NULL, "
                    "page_content TEXT, "
                    "metadata TEXT NOT NULL CHECK (json_valid(metadata)), "
                    "embedding BLOB NOT NULL, "
                    "dim INTEGER NOT NULL"
                    ")"
                )
                connection.execute(
                    f"CREATE INDEX IF NOT EXISTS {index_name} "
                    f"ON {self._table} ({self._key_expression})"
                )
        self.logger.debug("vdb-ensure-index", database=str(self._database))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add_documents(self, documents: Sequence[DocumentInput]) -> list[str]:
        """Embed and insert ``documents`` chunk by chunk.

        Each chunk of ``chunk_size`` documents costs one provider call and
        one write transaction. A failing chunk raises; chunks committed
        before it stay in the index.
        """

        docs = [_coerce_document(item) for item in documents]
        ids: list[str] = []
        for index, chunk in enumerate(_chunks(docs, self.chunk_size)):
            vectors = self._embed_chunk(chunk)
            ids.extend(self._write_rows(chunk, vectors))
            self.logger.info(
                "vdb-insert-chunk",
                chunk=index,
                size=len(chunk),
                model=self.model,
            )
        return ids

    def add_vectors(
        self,
        vectors: Sequence[Sequence[float]],
        documents: Sequence[DocumentInput],
    ) -> list[str]:
        """Insert pre-computed ``vectors`` paired with ``documents``."""

        if len(vectors) != len(documents):
            raise ValueError(
                "vectors and documents must have the same length "
                f"({len(vectors)} != {len(documents)})"
            )
        docs = [_coerce_document(item) for item in documents]
        ids: list[str] = []
        for start in range(0, len(docs), self.chunk_size):
            stop = start + self.chunk_size
            ids.extend(self._write_rows(docs[start:stop], vectors[start:stop]))
        return ids

    def replace_documents(
        self,
        delete_ids: Sequence[str],
        documents: Sequence[DocumentInput],
    ) -> list[str]:
        """Delete ``delete_ids`` and insert ``documents`` atomically.

        All embeddings are computed before the transaction opens; a provider
        failure therefore leaves the existing rows untouched.
        """

        docs = [_coerce_document(item) for item in documents]
        if not docs and not delete_ids:
            return []
        vectors: list[Sequence[float]] = []
        for chunk in _chunks(docs, self.chunk_size):
            vectors.extend(self._embed_chunk(chunk))
        return self._write_rows(docs, vectors, delete_ids=delete_ids)

    def upsert_documents(
        self,
        documents: Sequence[DocumentInput],
    ) -> ReconcileOutcome:
        """Reconcile caller-supplied documents against the index."""

        if self._reconciler is None:
            self._reconciler = Reconciler(logger=self.logger)
        docs = [_coerce_document(item) for item in documents]
        return self._reconciler.reconcile(self, docs)

    def delete_documents(self, filters: Sequence[Mapping[str, Any]]) -> int:
        """Delete every document matching any filter in ``filters``."""

        if _is_empty_filter_set(filters):
            return 0
        predicate = build_filter_set_predicate(filters)
        with self._session("delete") as connection:
            with connection:
                cursor = connection.execute(
                    f"DELETE FROM {self._table} WHERE {predicate.sql}",
                    predicate.params,
                )
                deleted = max(cursor.rowcount, 0)
        self.logger.info("vdb-delete", filters=len(filters), deleted=deleted)
        return deleted

    def delete_by_ids(self, ids: Sequence[str]) -> int:
        """Delete rows by their index-local identifiers."""

        unique = list(dict.fromkeys(ids))
        if not unique:
            return 0
        deleted = 0
        with self._session("delete") as connection:
            with connection:
                deleted = self._delete_ids(connection, unique)
        self.logger.info("vdb-delete-ids", requested=len(unique), deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def find_documents(
        self,
        filters: Sequence[Mapping[str, Any]] | None = None,
    ) -> list[IndexedDocument]:
        """Return documents whose metadata contains any of ``filters``.

        ``None`` applies the configured default filter; an empty sequence
        matches nothing.
        """

        if filters is None:
            predicate = self._default_predicate
        elif _is_empty_filter_set(filters):
            return []
        else:
            predicate = build_filter_set_predicate(filters)
        with self._session("find") as connection:
            rows = connection.execute(
                f"SELECT {_COLUMNS} FROM {self._table} "
                f"WHERE {predicate.sql} ORDER BY rowid",
                predicate.params,
            ).fetchall()
        return [IndexedDocument.from_row(row) for row in rows]

    def find_by_logical_keys(
        self,
        keys: Sequence[Hashable],
    ) -> list[IndexedDocument]:
        """Return every document whose logical key is in ``keys``."""

        unique = list(dict.fromkeys(keys))
        if not unique:
            return []
        documents: list[IndexedDocument] = []
        with self._session("find") as connection:
            for batch in _chunks(unique, _IN_CLAUSE_LIMIT):
                placeholders = ", ".join("?" for _ in batch)
                rows = connection.execute(
                    f"SELECT {_COLUMNS} FROM {self._table} "
                    f"WHERE {self._key_expression} IN ({placeholders}) "
                    "ORDER BY rowid",
                    tuple(batch),
                ).fetchall()
                documents.extend(IndexedDocument.from_row(row) for row in rows)
        return documents

    def count(self, filter: Mapping[str, Any] | None = None) -> int:
        predicate = self._resolve_filter(filter)
        with self._session("count") as connection:
            row = connection.execute(
                f"SELECT COUNT(*) FROM {self._table} WHERE {predicate.sql}",
                predicate.params,
            ).fetchone()
        return int(row[0])

    def similarity_search_vector_with_score(
        self,
        vector: Sequence[float],
        k: int,
        filter: Mapping[str, Any] | None = None,
    ) -> list[tuple[IndexedDocument, float]]:
        """Return up to ``k`` ``(document, distance)`` pairs, nearest first.

        Rows are scanned in pages of ``chunk_size``; each page is scored with
        a flat FAISS index and the best ``k`` candidates are kept across
        pages. Rows without content or with a non-finite distance are
        skipped.
        """

        if k <= 0:
            raise ValueError("k must be positive")
        query = np.asarray(vector, dtype="float32")
        if query.ndim != 1 or query.size == 0:
            raise VectorStoreError("Query vector must be a non-empty 1-D vector.")
        if not np.all(np.isfinite(query)):
            raise VectorStoreError("Query vector contains non-finite values.")
        predicate = self._resolve_filter(filter)

        best: list[tuple[float, int, IndexedDocument]] = []
        last_rowid = 0
        with self._session("search") as connection:
            while True:
                rows = connection.execute(
                    f"SELECT rowid AS rowid, {_COLUMNS}, embedding, dim "
                    f"FROM {self._table} "
                    "WHERE rowid > ? AND page_content IS NOT NULL "
                    f"AND ({predicate.sql}) "
                    "ORDER BY rowid LIMIT ?",
                    (last_rowid, *predicate.params, self.chunk_size),
                ).fetchall()
                if not rows:
                    break
                last_rowid = int(rows[-1]["rowid"])
                best = heapq.nsmallest(
                    k,
                    [*best, *self._score_page(rows, query, k)],
                    key=lambda item: (item[0], item[1]),
                )
        return [(document, distance) for distance, _, document in best]

    def similarity_search_with_score(
        self,
        query: str,
        k: int = 4,
        filter: Mapping[str, Any] | None = None,
    ) -> list[tuple[IndexedDocument, float]]:
        vector = self._embed_query(query)
        return self.similarity_search_vector_with_score(vector, k, filter)

    def similarity_search(
        self,
        query: str,
        k: int = 4,
        filter: Mapping[str, Any] | None = None,
    ) -> list[IndexedDocument]:
        return [
            document
            for document, _ in self.similarity_search_with_score(
                query,
                k,
                filter,
            )
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _session(self, action: str) -> Iterator[sqlite3.Connection]:
        """Yield a fresh connection, translating SQLite failures."""

        try:
            connection = sqlite3.connect(self._database, timeout=self._timeout)
        except sqlite3.Error as exc:
            raise TransientStorageError(
                f"Could not open {self._database} for {action}: {exc}"
            ) from exc
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        except sqlite3.OperationalError as exc:
            raise TransientStorageError(
                f"SQLite {action} on {self.table_name!r} failed: {exc}"
            ) from exc
        except sqlite3.DatabaseError as exc:
            raise VectorStoreError(
                f"SQLite {action} on {self.table_name!r} failed: {exc}"
            ) from exc
        finally:
            connection.close()

    def _resolve_filter(self, filter_: Mapping[str, Any] | None) -> Predicate:
        if filter_ is None:
            return self._default_predicate
        return build_containment_predicate(filter_)

    def _options(self) -> EmbedRequestOptions:
        return EmbedRequestOptions(max_batch_size=self._batch_size)

    def _embed_chunk(self, chunk: Sequence[Document]) -> list[Sequence[float]]:
        texts = [document.page_content for document in chunk]
        try:
            vectors = self.embeddings.embed_texts(
                texts,
                model=self.model,
                options=self._options(),
            )
        except Exception as exc:
            self.logger.error(
                "vdb-embed-failed",
                size=len(texts),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise self._embedding_error(
                f"Error inserting: {texts[0]}",
                exc,
            ) from exc
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                (
                    f"Error inserting: {texts[0]} (provider returned "
                    f"{len(vectors)} vectors for {len(texts)} texts)"
                ),
                provider=self.provider_key,
                model=self.model,
            )
        return list(vectors)

    def _embed_query(self, query: str) -> Sequence[float]:
        try:
            vectors = self.embeddings.embed_texts(
                [query],
                model=self.model,
                options=self._options(),
            )
        except Exception as exc:
            raise self._embedding_error(
                f"Error embedding query: {query}",
                exc,
            ) from exc
        if len(vectors) != 1:
            raise EmbeddingProviderError(
                "Provider returned no vector for the query.",
                provider=self.provider_key,
                model=self.model,
            )
        return vectors[0]

    def _embedding_error(
        self,
        message: str,
        cause: Exception,
    ) -> EmbeddingProviderError:
        if isinstance(cause, EmbeddingProviderError):
            return EmbeddingProviderError(
                message,
                provider=cause.provider,
                model=cause.model,
                request_id=cause.request_id,
                status_code=cause.status_code,
            )
        return EmbeddingProviderError(
            message,
            provider=self.provider_key,
            model=self.model,
        )

    def _write_rows(
        self,
        documents: Sequence[Document],
        vectors: Sequence[Sequence[float]],
        *,
        delete_ids: Sequence[str] = (),
    ) -> list[str]:
        """Delete ``delete_ids`` then insert rows in a single transaction.

        Storage and dimension failures are re-raised as the same error type
        naming the first document of the batch, followed by the reason.
        """

        if len(vectors) != len(documents):
            raise ValueError("each document requires exactly one vector")
        ids = [new_document_id() for _ in documents]
        try:
            dim = self._validate_vectors(vectors)
            rows = [
                (
                    identifier,
                    self.version,
                    document.page_content,
                    _dump_metadata(document.metadata),
                    encode_embedding(vector),
                    dim,
                )
                for identifier, document, vector in zip(ids, documents, vectors)
            ]
            with self._session("insert") as connection:
                with connection:
                    if delete_ids:
                        self._delete_ids(connection, list(delete_ids))
                    if rows:
                        self._check_dimension(connection, dim)
                        connection.executemany(
                            f"INSERT INTO {self._table} "
                            "(id, version, page_content, metadata, embedding, dim) "
                            "VALUES (?, ?, ?, ?, ?, ?)",
                            rows,
                        )
        except VectorStoreError as exc:
            if not documents:
                raise
            self.logger.error(
                "vdb-insert-failed",
                size=len(documents),
                deleted=len(delete_ids),
                error=str(exc),
            )
            raise type(exc)(
                f"Error inserting: {documents[0].page_content} ({exc})"
            ) from exc
        return ids

    def _validate_vectors(
        self,
        vectors: Sequence[Sequence[float]],
    ) -> int | None:
        dims = {len(vector) for vector in vectors}
        if not dims:
            return None
        if len(dims) > 1 or 0 in dims:
            raise VectorStoreError(
                f"Embedding dimensions are inconsistent: {sorted(dims)}"
            )
        return dims.pop()

    def _check_dimension(
        self,
        connection: sqlite3.Connection,
        dim: int | None,
    ) -> None:
        row = connection.execute(
            f"SELECT dim FROM {self._table} LIMIT 1"
        ).fetchone()
        if row is not None and dim is not None and int(row["dim"]) != dim:
            raise VectorStoreError(
                f"Embedding dimension {dim} does not match index dimension "
                f"{row['dim']} for table {self.table_name!r}."
            )

    def _delete_ids(self, connection: sqlite3.Connection, ids: list[str]) -> int:
        deleted = 0
        for batch in _chunks(ids, _IN_CLAUSE_LIMIT):
            placeholders = ", ".join("?" for _ in batch)
            cursor = connection.execute(
                f"DELETE FROM {self._table} WHERE id IN ({placeholders})",
                tuple(batch),
            )
            deleted += max(cursor.rowcount, 0)
        return deleted

    def _score_page(
        self,
        rows: Sequence[sqlite3.Row],
        query: np.ndarray,
        k: int,
    ) -> list[tuple[float, int, IndexedDocument]]:
        dims = {int(row["dim"]) for row in rows}
        if dims != {query.size}:
            expected = ", ".join(str(value) for value in sorted(dims))
            raise VectorStoreError(
                f"Query dimension {query.size} does not match index "
                f"dimension {expected} for table {self.table_name!r}."
            )
        rowids = [int(row["rowid"]) for row in rows]
        matrix = np.vstack([decode_embedding(row["embedding"]) for row in rows])
        try:
            hits = nearest_neighbours(
                rowids,
                matrix,
                query,
                metric=self.settings.metric,
                k=k,
            )
        except FaissScoringError as exc:
            raise VectorStoreError(f"Similarity search failed: {exc}") from exc

        by_rowid = {int(row["rowid"]): row for row in rows}
        scored: list[tuple[float, int, IndexedDocument]] = []
        for rowid, distance in hits:
            if not is_finite_distance(distance):
                continue
            scored.append(
                (distance, rowid, IndexedDocument.from_row(by_rowid[rowid]))
            )
        return scored


def _is_empty_filter_set(filters: Any) -> bool:
    return (
        isinstance(filters, Sequence)
        and not isinstance(filters, (str, bytes))
        and len(filters) == 0
    )


def _dump_metadata(metadata: Mapping[str, Any]) -> str:
    return json.dumps(metadata, ensure_ascii=False, allow_nan=False)
