"""Vector index primitives: store, reconciler, filters and providers."""

from __future__ import annotations

from .errors import (
    ConfigurationError,
    EmbeddingProviderError,
    MalformedFilterError,
    TransientStorageError,
    VectorStoreError,
)
from .faiss_index import DistanceMetric, FaissScoringError, nearest_neighbours
from .filters import (
    Predicate,
    build_containment_predicate,
    build_filter_set_predicate,
)
from .locks import KeyedLock, KeyedLockTimeoutError
from .models import Document, IndexedDocument
from .providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderFactory,
    ProviderInitContext,
    ProviderNotRegisteredError,
    ProviderRegistry,
    ProviderRegistryError,
    create_default_provider_registry,
)
from .reconcile import (
    ReconcileOutcome,
    ReconcilePlan,
    Reconciler,
    metadata_matches,
    plan_reconciliation,
)
from .store import VectorIndexStore

__all__ = [
    "ConfigurationError",
    "EmbeddingProviderError",
    "MalformedFilterError",
    "TransientStorageError",
    "VectorStoreError",
    "DistanceMetric",
    "FaissScoringError",
    "nearest_neighbours",
    "Predicate",
    "build_containment_predicate",
    "build_filter_set_predicate",
    "KeyedLock",
    "KeyedLockTimeoutError",
    "Document",
    "IndexedDocument",
    "EmbedRequestOptions",
    "EmbeddingMatrix",
    "EmbeddingProviderCaps",
    "EmbeddingProviderModel",
    "EmbeddingVector",
    "EmbeddingsProvider",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "create_default_provider_registry",
    "ReconcileOutcome",
    "ReconcilePlan",
    "Reconciler",
    "metadata_matches",
    "plan_reconciliation",
    "VectorIndexStore",
]
