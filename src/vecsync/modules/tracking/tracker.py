"""Change-notification entry point keeping an index in step with its rows."""

from __future__ import annotations

from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field

from vecsync.core.logging import Logger, get_logger, log_context
from vecsync.modules.vdb.errors import EmbeddingProviderError, VectorStoreError
from vecsync.modules.vdb.reconcile import ReconcileOutcome
from vecsync.modules.vdb.store import VectorIndexStore

from .source import EntitySource
from .synthesizer import DocumentSynthesizer

__all__ = ["EntityChangeTracker"]


@dataclass(slots=True)
class EntityChangeTracker:
    """Reconcile one index whenever a tracked row is inserted or updated.

    Callers invoke :meth:`on_entity_changed` after their own write commits.
    The current row is always re-read from ``source``, so a late or
    reordered notification still indexes the latest state.
    """

    store: VectorIndexStore
    source: EntitySource
    synthesizer: DocumentSynthesizer
    logger: Logger | None = field(default=None)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(
                __name__,
                component="entity-tracker",
                table=self.store.table_name,
            )

    def on_entity_changed(
        self,
        entity_id: Hashable,
        changed_columns: Iterable[str] | None = None,
    ) -> ReconcileOutcome | None:
        """Handle an insert (``changed_columns=None``) or an update.

        Updates touching no tracked content or metadata field return without
        reading or writing anything. Inserts are indexed only when at least
        one content field renders non-empty text.

        Returns:
            The reconciliation outcome, or ``None`` when nothing ran.

        Raises:
            VectorStoreError: If the lookup or write against the index fails.
            EmbeddingProviderError: If the provider could not embed the row.
        """

        is_insert = changed_columns is None
        if not is_insert:
            if isinstance(changed_columns, str):
                changed_columns = (changed_columns,)
            changed = frozenset(changed_columns)
            relevant = changed & self.synthesizer.spec.tracked_names
            if not relevant:
                self.logger.debug(
                    "tracker-skip-untracked",
                    entity_id=entity_id,
                    changed=sorted(changed),
                )
                return None

        entity = self.source.fetch(entity_id)
        if entity is None:
            self.logger.warning("tracker-entity-missing", entity_id=entity_id)
            return None
        if is_insert and not self.synthesizer.has_content(entity):
            self.logger.debug("tracker-skip-empty", entity_id=entity_id)
            return None

        document = self.synthesizer.synthesize(entity)
        try:
            with log_context(entity_id=entity_id):
                outcome = self.store.upsert_documents([document])
        except (VectorStoreError, EmbeddingProviderError) as exc:
            self.logger.error(
                "reconcile-failed",
                entity_id=entity_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise

        self.logger.info(
            "tracker-reconciled",
            entity_id=entity_id,
            inserted=outcome.inserted,
            deleted=outcome.deleted,
            skipped=outcome.skipped,
        )
        return outcome
