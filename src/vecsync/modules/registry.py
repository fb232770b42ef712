"""Process-wide registry of per-table vector stores."""

from __future__ import annotations

from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from vecsync.core.config import AppConfig
from vecsync.core.logging import Logger, get_logger
from vecsync.modules.tracking import (
    BackfillCoordinator,
    BackfillReport,
    DocumentSynthesizer,
    EntityChangeTracker,
    EntitySource,
    TrackingSpec,
)
from vecsync.modules.vdb.errors import ConfigurationError, EmbeddingProviderError
from vecsync.modules.vdb.providers import (
    EmbeddingsProvider,
    ProviderNotRegisteredError,
    ProviderRegistry,
    create_default_provider_registry,
)
from vecsync.modules.vdb.store import VectorIndexStore

__all__ = [
    "TrackingBinding",
    "VectorStoreRegistry",
    "build_store_registry",
    "create_embeddings_provider",
]


@dataclass(frozen=True, slots=True)
class TrackingBinding:
    """A tracker wired to its store, plus the backfill started for it."""

    tracker: EntityChangeTracker
    backfill: Future[BackfillReport | None] | None = None


@dataclass(slots=True)
class VectorStoreRegistry:
    """One :class:`VectorIndexStore` per table, owned for process lifetime.

    Keeping a single instance per table keeps every writer of that table on
    the same per-key locks.
    """

    config: AppConfig | None = None
    logger: Logger | None = None
    _stores: dict[str, VectorIndexStore] = field(
        init=False,
        default_factory=dict,
        repr=False,
    )

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="store-registry")

    def register(self, store: VectorIndexStore) -> VectorIndexStore:
        """Register ``store`` under its table name; errors if taken."""

        name = store.table_name
        if name in self._stores:
            raise ConfigurationError(
                f"A vector store for table {name!r} is already registered."
            )
        self._stores[name] = store
        self.logger.debug("store-registered", table=name)
        return store

    def get(self, table: str) -> VectorIndexStore:
        """Return the store registered for ``table`` or raise."""

        try:
            return self._stores[table]
        except KeyError as exc:
            raise ConfigurationError(
                f"No vector store registered for table {table!r}."
            ) from exc

    def tables(self) -> tuple[str, ...]:
        return tuple(sorted(self._stores))

    def __contains__(self, table: object) -> bool:
        return table in self._stores

    def __iter__(self) -> Iterator[VectorIndexStore]:
        return iter(self._stores[name] for name in self.tables())

    def __len__(self) -> int:
        return len(self._stores)

    def bind_tracking(
        self,
        table: str,
        *,
        source: EntitySource,
        spec: TrackingSpec,
        backfill: bool | None = None,
        executor: Executor | None = None,
    ) -> TrackingBinding:
        """Attach a change tracker to ``table``.

        When ``backfill`` is true (or unset and enabled for the table in
        configuration) a background backfill starts immediately.
        """

        store = self.get(table)
        synthesizer = DocumentSynthesizer(spec, document_key=store.key_field)
        tracker = EntityChangeTracker(
            store=store,
            source=source,
            synthesizer=synthesizer,
            logger=self.logger.bind(component="entity-tracker", table=table),
        )
        if backfill is None:
            backfill = bool(
                self.config and self.config.table_settings(table).backfill
            )
        future = None
        if backfill:
            coordinator = BackfillCoordinator(
                store=store,
                source=source,
                synthesizer=synthesizer,
                logger=self.logger.bind(component="backfill", table=table),
            )
            future = coordinator.start(executor)
        return TrackingBinding(tracker=tracker, backfill=future)


def create_embeddings_provider(
    config: AppConfig,
    providers: ProviderRegistry | None = None,
    *,
    logger: Logger | None = None,
) -> EmbeddingsProvider:
    """Instantiate the configured embeddings provider.

    Raises:
        ConfigurationError: If the provider is unknown or rejects its options.
    """

    registry = providers or create_default_provider_registry()
    key = config.embedding.provider
    log = logger or get_logger(__name__, component="store-registry")
    try:
        return registry.create(
            key,
            logger=log.bind(component="embedding-provider", provider=key),
            config=config.embedding.options,
        )
    except ProviderNotRegisteredError as exc:
        raise ConfigurationError(
            f"Embedding provider {key!r} is not registered."
        ) from exc
    except EmbeddingProviderError as exc:
        raise ConfigurationError(
            f"Embedding provider {key!r} is misconfigured: {exc}"
        ) from exc


def build_store_registry(
    config: AppConfig,
    providers: ProviderRegistry | None = None,
    *,
    tables: Sequence[str] | None = None,
    embeddings: EmbeddingsProvider | None = None,
    logger: Logger | None = None,
) -> VectorStoreRegistry:
    """Open a store for every configured table and register it."""

    log = logger or get_logger(__name__, component="store-registry")
    provider = embeddings or create_embeddings_provider(
        config,
        providers,
        logger=log,
    )
    batch_size = config.embedding.batch_size
    registry = VectorStoreRegistry(config=config, logger=log)
    for name in tables or config.table_names():
        store = VectorIndexStore.open(
            provider,
            config.store_settings(name),
            model=config.embedding.model,
            provider_key=config.embedding.provider,
            batch_size=None if batch_size == "auto" else int(batch_size),
            logger=log.bind(component="vector-store", table=name),
        )
        registry.register(store)
    log.info("store-registry-ready", tables=registry.tables())
    return registry
