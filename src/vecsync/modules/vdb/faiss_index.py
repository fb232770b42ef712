"""FAISS scoring for one page of stored embeddings.

The store never keeps a FAISS index between calls: each page of rows read
from SQLite is loaded into a throwaway flat index keyed by ``rowid`` and
searched once. Scores come back as ascending distances whatever the metric.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import faiss
import numpy as np

__all__ = [
    "DistanceMetric",
    "FaissScoringError",
    "nearest_neighbours",
]


class FaissScoringError(RuntimeError):
    """Raised when a page cannot be scored against the query."""


@dataclass(frozen=True)
class DistanceMetric:
    """A configured metric name paired with the FAISS metric that serves it."""

    name: str
    faiss_metric: int

    @classmethod
    def parse(cls, value: str) -> "DistanceMetric":
        key = value.strip().lower()
        if key == "cosine":
            return cls("cosine", faiss.METRIC_INNER_PRODUCT)
        if key in ("l2", "euclidean"):
            return cls("l2", faiss.METRIC_L2)
        raise ValueError(f"Unsupported distance metric: {value!r}")

    @property
    def normalizes(self) -> bool:
        return self.name == "cosine"

    def to_distance(self, raw: float) -> float:
        """Turn a FAISS score into a distance where smaller is closer.

        Inner product over unit vectors is cosine similarity, so cosine
        distance is ``1 - raw``. L2 scores are already squared distances.
        """

        return 1.0 - float(raw) if self.normalizes else float(raw)


def _as_matrix(vectors: Sequence[Sequence[float]] | np.ndarray, dim: int) -> np.ndarray:
    # Copy: normalize_L2 works in place.
    matrix = np.array(vectors, dtype="float32", ndmin=2)
    if matrix.ndim != 2:
        raise FaissScoringError("vectors must form a 2-D matrix")
    if matrix.shape[1] != dim:
        raise FaissScoringError(
            f"Vector dimension mismatch: expected {dim}, got {matrix.shape[1]}"
        )
    return np.ascontiguousarray(matrix)


def nearest_neighbours(
    ids: Sequence[int],
    vectors: Sequence[Sequence[float]] | np.ndarray,
    query: Sequence[float] | np.ndarray,
    *,
    metric: DistanceMetric | str,
    k: int,
) -> list[tuple[int, float]]:
    """Return up to ``k`` ``(id, distance)`` pairs for ``query``, nearest first.

    ``ids`` label the rows of ``vectors``. Non-finite scores are dropped, as
    are FAISS padding slots when the page holds fewer than ``k`` rows.

    Raises:
        ValueError: If ``k`` is not positive or ``ids`` and ``vectors``
            differ in length.
        FaissScoringError: If a vector does not share the query's dimension.
    """

    if k < 1:
        raise ValueError("k must be positive")
    if isinstance(metric, str):
        metric = DistanceMetric.parse(metric)
    needle = np.asarray(query, dtype="float32").reshape(-1)
    dim = int(needle.size)
    if dim == 0:
        raise FaissScoringError("query vector is empty")
    labels = np.asarray(list(ids), dtype="int64")
    if labels.size == 0:
        return []
    matrix = _as_matrix(vectors, dim)
    if len(labels) != len(matrix):
        raise ValueError("ids and vectors must have matching lengths")
    needles = _as_matrix([needle], dim)
    if metric.normalizes:
        faiss.normalize_L2(matrix)
        faiss.normalize_L2(needles)

    index = faiss.IndexIDMap(faiss.IndexFlat(dim, metric.faiss_metric))
    index.add_with_ids(matrix, labels)
    scores, found = index.search(needles, min(k, len(labels)))

    hits = [
        (int(label), metric.to_distance(score))
        for score, label in zip(scores[0], found[0])
        if label >= 0 and np.isfinite(score)
    ]
    hits.sort(key=lambda hit: hit[1])
    return hits
