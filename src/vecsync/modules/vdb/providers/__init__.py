"""Embedding providers behind the vector index store.

A provider turns page content into fixed-dimension vectors. Stores only see
the :class:`EmbeddingsProvider` protocol; concrete providers are looked up by
key in a :class:`ProviderRegistry` built from configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from types import MappingProxyType
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable

from vecsync.core.logging import Logger

__all__ = [
    "BUILTIN_PROVIDERS",
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
]

EmbeddingVector = tuple[float, ...]
EmbeddingMatrix = tuple[EmbeddingVector, ...]

# key -> "module:factory"; modules are imported when a provider is built.
BUILTIN_PROVIDERS: Mapping[str, str] = MappingProxyType(
    {
        "fake": "vecsync.modules.vdb.providers.fake:fake_provider_factory",
        "openai": "vecsync.modules.vdb.providers.openai:openai_provider_factory",
    }
)


@dataclass(frozen=True, slots=True)
class EmbedRequestOptions:
    """Per-call limits a store passes along with every embed request."""

    max_batch_size: int
    timeout: float | None = None
    max_input_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when provided")
        if self.max_input_tokens is not None and self.max_input_tokens < 1:
            raise ValueError("max_input_tokens must be >= 1 when provided")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderCaps:
    """Limits advertised by a provider, optionally for one model."""

    max_batch_size: int
    max_input_tokens: int | None = None
    max_request_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderModel:
    """Resolved model identity and vector dimension."""

    provider: str
    name: str
    dim: int | None = None

    def __post_init__(self) -> None:
        provider = self.provider.strip().lower()
        name = self.name.strip()
        if not provider or not name:
            raise ValueError("provider and model name cannot be empty")
        if self.dim is not None and self.dim < 1:
            raise ValueError("dim must be >= 1 when provided")
        object.__setattr__(self, "provider", provider)
        object.__setattr__(self, "name", name)

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.name}"


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """What a vector index store needs from an embedding backend."""

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        """Return the identity and dimension of ``model``."""

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        """Return the limits that apply to ``model`` (or the provider)."""

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        """Return one vector per text, in input order."""


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Arguments handed to a provider factory.

    ``config`` is the ``[embedding.options]`` table, frozen so factories
    cannot leak changes back into the loaded configuration.
    """

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "config",
            MappingProxyType(dict(self.config or {})),
        )


ProviderFactory = Callable[[ProviderInitContext], EmbeddingsProvider]


class ProviderRegistryError(RuntimeError):
    """Raised for invalid provider registrations."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when no factory exists for a provider key."""


def _normalize_key(key: str) -> str:
    normalized = key.strip().lower()
    if not normalized:
        raise ValueError("provider key cannot be empty")
    return normalized


def _deferred_factory(target: str) -> ProviderFactory:
    module_name, _, attribute = target.partition(":")

    def _factory(context: ProviderInitContext) -> EmbeddingsProvider:
        return getattr(import_module(module_name), attribute)(context)

    return _factory


class ProviderRegistry:
    """Case-insensitive mapping of provider keys onto factories.

    Example:
        >>> registry = create_default_provider_registry()
        >>> sorted(registry.snapshot())
        ['fake', 'openai']
    """

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.strip().lower() in self._factories

    def register(self, key: str, factory: ProviderFactory) -> None:
        normalized = _normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered"
            )
        self._factories[normalized] = factory

    def unregister(self, key: str) -> None:
        self._factories.pop(_normalize_key(key), None)

    def get_factory(self, key: str) -> ProviderFactory:
        normalized = _normalize_key(key)
        factory = self._factories.get(normalized)
        if factory is None:
            known = ", ".join(sorted(self._factories)) or "none"
            raise ProviderNotRegisteredError(
                f"No provider registered under key {normalized!r} "
                f"(known: {known})"
            )
        return factory

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingsProvider:
        """Build the provider registered under ``key``."""

        factory = self.get_factory(key)
        return factory(ProviderInitContext(logger=logger, config=config))

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        return MappingProxyType(dict(self._factories))


def create_default_provider_registry() -> ProviderRegistry:
    """Return a registry holding every provider in :data:`BUILTIN_PROVIDERS`."""

    return ProviderRegistry(
        {key: _deferred_factory(target) for key, target in BUILTIN_PROVIDERS.items()}
    )
