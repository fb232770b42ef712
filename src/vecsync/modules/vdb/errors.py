"""Typed error hierarchy for vector index stores and embedding providers."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "VectorStoreError",
    "TransientStorageError",
    "MalformedFilterError",
    "ConfigurationError",
    "EmbeddingProviderError",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryableError",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderInputTooLargeError",
    "EmbeddingProviderDimMismatchError",
]


class VectorStoreError(RuntimeError):
    """Base error raised by :class:`~vecsync.modules.vdb.store.VectorIndexStore`."""


class TransientStorageError(VectorStoreError):
    """Raised for connection, lock, or timeout failures; safe to retry."""


class MalformedFilterError(VectorStoreError, ValueError):
    """Raised when a filter value cannot be encoded into a query predicate."""


class ConfigurationError(VectorStoreError):
    """Raised when a store or its collaborators are misconfigured."""


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised when text cannot be turned into vectors."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class EmbeddingProviderConfigurationError(EmbeddingProviderError):
    """Raised when the provider configuration is invalid."""


@dataclass(slots=True)
class EmbeddingProviderRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class EmbeddingProviderRetryableError(EmbeddingProviderError):
    """Raised for retryable transport or server-side errors."""


@dataclass(slots=True)
class EmbeddingProviderRateLimitError(EmbeddingProviderRetryableError):
    """Raised when the provider returns a rate limiting response."""


@dataclass(slots=True)
class EmbeddingProviderRetryExceededError(EmbeddingProviderError):
    """Raised when retry attempts are exhausted."""

    attempts: int = 0


@dataclass(slots=True)
class EmbeddingProviderInputTooLargeError(EmbeddingProviderError):
    """Raised when a single input exceeds provider token limits."""

    token_count: int | None = None
    limit: int | None = None


@dataclass(slots=True)
class EmbeddingProviderDimMismatchError(EmbeddingProviderError):
    """Raised when vectors do not have the expected dimension."""

    expected: int | None = None
    actual: int | None = None
