"""Typed document representations shared by the store and reconciler."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np

__all__ = [
    "Document",
    "IndexedDocument",
    "normalize_metadata",
    "encode_embedding",
    "decode_embedding",
    "is_finite_distance",
]

_EMBEDDING_DTYPE = np.dtype("<f4")


def normalize_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return ``metadata`` as it will read back from the index.

    The payload goes through the same JSON encoding used for persistence so
    candidate and stored metadata compare exactly.
    """

    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise TypeError(
            f"metadata must be a mapping (got {type(metadata)!r})"
        )
    encoded = json.dumps(dict(metadata), default=str, allow_nan=False)
    return json.loads(encoded)


def encode_embedding(vector: Sequence[float]) -> bytes:
    array = np.asarray(vector, dtype=_EMBEDDING_DTYPE)
    if array.ndim != 1 or array.size == 0:
        raise ValueError("embedding must be a non-empty 1-D vector")
    return array.tobytes()


def decode_embedding(payload: bytes) -> np.ndarray:
    return np.frombuffer(payload, dtype=_EMBEDDING_DTYPE)


@dataclass(frozen=True, slots=True)
class Document:
    """Text payload and metadata submitted for indexing."""

    page_content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.page_content, str):
            raise TypeError(
                "page_content must be a string "
                f"(got {type(self.page_content)!r})"
            )
        object.__setattr__(self, "metadata", normalize_metadata(self.metadata))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Document":
        """Build a document from ``page_content``/``pageContent`` payloads."""

        content = payload.get("page_content", payload.get("pageContent"))
        if content is None:
            raise ValueError("document payload requires page_content")
        return cls(page_content=content, metadata=payload.get("metadata"))

    def to_mapping(self) -> dict[str, Any]:
        return {"page_content": self.page_content, "metadata": self.metadata}


@dataclass(frozen=True, slots=True)
class IndexedDocument:
    """A persisted row of the vector index."""

    id: str
    version: str
    page_content: str
    metadata: dict[str, Any]
    embedding: tuple[float, ...] | None = None

    @classmethod
    def from_row(
        cls,
        row: Mapping[str, Any],
        *,
        with_embedding: bool = False,
    ) -> "IndexedDocument":
        raw_metadata = row["metadata"]
        metadata = json.loads(raw_metadata) if raw_metadata else {}
        embedding: tuple[float, ...] | None = None
        if with_embedding and row["embedding"] is not None:
            embedding = tuple(
                float(value) for value in decode_embedding(row["embedding"])
            )
        return cls(
            id=str(row["id"]),
            version=str(row["version"]),
            page_content=row["page_content"],
            metadata=metadata,
            embedding=embedding,
        )

    def logical_key(self, key_field: str) -> Any:
        return self.metadata.get(key_field)

    def as_document(self) -> Document:
        return Document(page_content=self.page_content, metadata=self.metadata)

    def to_mapping(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "version": self.version,
            "page_content": self.page_content,
            "metadata": self.metadata,
        }
        if self.embedding is not None:
            payload["embedding"] = list(self.embedding)
        return payload


def is_finite_distance(value: Any) -> bool:
    return value is not None and math.isfinite(float(value))
