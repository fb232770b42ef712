"""Deterministic offline embeddings provider.

Vectors are derived from a SHA-256 seed of the text so identical inputs
always embed identically. Useful for local development and smoke tests where
no embedding service is reachable; the vectors carry no semantic meaning.
"""

from __future__ import annotations

import hashlib
from typing import Mapping, Sequence

import numpy as np

from vecsync.core.logging import Logger
from vecsync.modules.vdb.errors import EmbeddingProviderConfigurationError

from . import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    ProviderInitContext,
)

__all__ = ["FakeEmbeddingsProvider", "fake_provider_factory"]

_DEFAULT_DIM = 16


class FakeEmbeddingsProvider:
    """Embed texts into seeded pseudo-random unit vectors."""

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> None:
        self.logger = logger
        raw_dim = (config or {}).get("dim", _DEFAULT_DIM)
        if not isinstance(raw_dim, int) or raw_dim < 1:
            raise EmbeddingProviderConfigurationError(
                f"fake provider dim must be a positive integer (got {raw_dim!r})",
                provider="fake",
                model="*",
            )
        self.dim = raw_dim

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        return EmbeddingProviderModel(provider="fake", name=model, dim=self.dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(max_batch_size=1_024)

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        vectors = tuple(self._embed_one(text) for text in texts)
        self.logger.debug(
            "fake-embed-request",
            provider="fake",
            model=model,
            batch_size=len(texts),
        )
        return vectors

    def _embed_one(self, text: str) -> tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        seed = int.from_bytes(digest[:8], "big")
        rng = np.random.default_rng(seed)
        vector = rng.standard_normal(self.dim)
        norm = float(np.linalg.norm(vector))
        if norm:
            vector = vector / norm
        return tuple(float(value) for value in vector)


def fake_provider_factory(context: ProviderInitContext) -> FakeEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return FakeEmbeddingsProvider(logger=context.logger, config=context.config)
