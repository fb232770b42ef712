"""Shared pytest fixtures for vector index and tracking tests."""

from __future__ import annotations

import hashlib
import sqlite3
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, Sequence

import pytest

from vecsync.core.config import ConnectionSettings, VectorStoreSettings
from vecsync.modules.vdb.providers import (
    EmbedRequestOptions,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
)
from vecsync.modules.vdb.store import VectorIndexStore


class RecordingEmbeddings:
    """Deterministic provider recording every embed call.

    Vectors derive from a SHA-256 digest of the text unless ``vectors``
    pins an explicit value. Any text listed in ``fail_on`` makes the whole
    call raise.
    """

    def __init__(self, dim: int = 8) -> None:
        self.dim = dim
        self.calls: list[tuple[str, ...]] = []
        self.vectors: dict[str, tuple[float, ...]] = {}
        self.fail_on: set[str] = set()

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        return EmbeddingProviderModel(provider="stub", name=model, dim=self.dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(max_batch_size=10_000)

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> tuple[tuple[float, ...], ...]:
        self.calls.append(tuple(texts))
        failing = self.fail_on.intersection(texts)
        if failing:
            raise RuntimeError(f"provider unavailable for {sorted(failing)}")
        return tuple(self.vector_for(text) for text in texts)

    def vector_for(self, text: str) -> tuple[float, ...]:
        if text in self.vectors:
            return self.vectors[text]
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        values = [(byte / 127.5) - 1.0 for byte in digest[: self.dim]]
        values[0] += 2.0
        return tuple(values)

    @property
    def embedded_texts(self) -> int:
        return sum(len(call) for call in self.calls)


@pytest.fixture
def embeddings() -> RecordingEmbeddings:
    return RecordingEmbeddings()


@pytest.fixture
def database(tmp_path: Path) -> Path:
    return tmp_path / "index.db"


@pytest.fixture
def make_settings(database: Path) -> Callable[..., VectorStoreSettings]:
    """Return a factory building store settings against ``database``."""

    def _make(**overrides: Any) -> VectorStoreSettings:
        payload: dict[str, Any] = {
            "connection": ConnectionSettings(database=database),
            "document_primary_key": "key",
        }
        payload.update(overrides)
        return VectorStoreSettings(**payload)

    return _make


@pytest.fixture
def make_store(
    embeddings: RecordingEmbeddings,
    make_settings: Callable[..., VectorStoreSettings],
) -> Callable[..., VectorIndexStore]:
    """Return a factory opening stores that share the stub provider."""

    def _make(**overrides: Any) -> VectorIndexStore:
        return VectorIndexStore.open(
            embeddings,
            make_settings(**overrides),
            model="stub-model",
            provider_key="stub",
        )

    return _make


@pytest.fixture
def store(make_store: Callable[..., VectorIndexStore]) -> VectorIndexStore:
    return make_store()


@pytest.fixture
def raw_connection(database: Path) -> Iterator[sqlite3.Connection]:
    """Direct connection for asserting on the physical table."""

    connection = sqlite3.connect(database)
    connection.row_factory = sqlite3.Row
    try:
        yield connection
    finally:
        connection.close()
