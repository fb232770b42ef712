"""Decide and apply skip / replace / insert for candidate documents."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from vecsync.core.logging import Logger, get_logger

from .errors import MalformedFilterError
from .models import Document, IndexedDocument

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .store import VectorIndexStore

__all__ = [
    "ReconcileOutcome",
    "ReconcilePlan",
    "Reconciler",
    "logical_key",
    "metadata_matches",
    "plan_reconciliation",
]


@dataclass(frozen=True, slots=True)
class ReconcilePlan:
    """Writes required to bring the index in line with the candidates."""

    inserts: tuple[Document, ...] = ()
    delete_ids: tuple[str, ...] = ()
    skipped_keys: tuple[Hashable, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not self.inserts and not self.delete_ids


@dataclass(frozen=True, slots=True)
class ReconcileOutcome:
    """Result of applying a :class:`ReconcilePlan`."""

    inserted_ids: tuple[str, ...] = ()
    deleted_ids: tuple[str, ...] = ()
    skipped_keys: tuple[Hashable, ...] = ()

    @property
    def inserted(self) -> int:
        return len(self.inserted_ids)

    @property
    def deleted(self) -> int:
        return len(self.deleted_ids)

    @property
    def skipped(self) -> int:
        return len(self.skipped_keys)


def logical_key(document: Document | IndexedDocument, key_field: str) -> Hashable:
    """Return the scalar logical key stored under ``key_field``."""

    value = document.metadata.get(key_field)
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise MalformedFilterError(
            f"Document metadata requires a string or numeric {key_field!r} "
            f"value (got {value!r})."
        )
    return value


def _scalars_match(stored: Any, wanted: Any) -> bool:
    if isinstance(stored, bool) or isinstance(wanted, bool):
        return isinstance(stored, bool) and isinstance(wanted, bool) and (
            stored is wanted
        )
    numeric = (int, float)
    if isinstance(stored, numeric) and isinstance(wanted, numeric):
        return stored == wanted
    if type(stored) is not type(wanted):
        return False
    return stored == wanted


def metadata_matches(stored: Any, wanted: Any) -> bool:
    """Return ``True`` when ``stored`` contains everything in ``wanted``.

    Mappings match when every key of ``wanted`` matches recursively; lists
    match when every element of ``wanted`` matches some stored element.
    Scalars compare strictly, so ``True`` never matches ``1``.

    Example:
        >>> metadata_matches({"id": "a", "tag": ["x", "y"]}, {"tag": ["y"]})
        True
        >>> metadata_matches({"flag": 1}, {"flag": True})
        False
    """

    if isinstance(wanted, Mapping):
        if not isinstance(stored, Mapping):
            return False
        return all(
            key in stored and metadata_matches(stored[key], value)
            for key, value in wanted.items()
        )
    if isinstance(wanted, list):
        if not isinstance(stored, list):
            return False
        return all(
            any(metadata_matches(item, element) for item in stored)
            for element in wanted
        )
    if isinstance(stored, (Mapping, list)):
        return False
    return _scalars_match(stored, wanted)


def plan_reconciliation(
    candidates: Sequence[Document],
    existing: Sequence[IndexedDocument],
    key_field: str,
) -> ReconcilePlan:
    """Plan writes for ``candidates`` given the ``existing`` indexed rows.

    When several candidates share a logical key the last one wins. A key
    is skipped when one existing row already carries the candidate's
    content and a metadata superset; any other rows for that key are
    scheduled for deletion.
    """

    latest: dict[Hashable, Document] = {}
    for candidate in candidates:
        latest[logical_key(candidate, key_field)] = candidate

    grouped: defaultdict[Hashable, list[IndexedDocument]] = defaultdict(list)
    for document in existing:
        key = document.metadata.get(key_field)
        if isinstance(key, bool) or not isinstance(key, (str, int, float)):
            continue
        if key in latest:
            grouped[key].append(document)

    inserts: list[Document] = []
    delete_ids: list[str] = []
    skipped: list[Hashable] = []
    for key, candidate in latest.items():
        current = grouped.get(key, [])
        keeper = next(
            (
                document
                for document in current
                if document.page_content == candidate.page_content
                and metadata_matches(document.metadata, candidate.metadata)
            ),
            None,
        )
        if keeper is not None:
            skipped.append(key)
            delete_ids.extend(
                document.id for document in current if document is not keeper
            )
            continue
        delete_ids.extend(document.id for document in current)
        inserts.append(candidate)

    return ReconcilePlan(
        inserts=tuple(inserts),
        delete_ids=tuple(delete_ids),
        skipped_keys=tuple(skipped),
    )


@dataclass(slots=True)
class Reconciler:
    """Apply reconciliation plans under per-key locks."""

    logger: Logger | None = field(default=None)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="reconciler")

    def reconcile(
        self,
        store: "VectorIndexStore",
        documents: Sequence[Document],
    ) -> ReconcileOutcome:
        """Bring ``store`` in line with ``documents``.

        Holds the lock of every logical key involved for the duration of the
        lookup and the write, so concurrent reconciliations of one key run
        one after the other.
        """

        if not documents:
            return ReconcileOutcome()
        keys = [logical_key(document, store.key_field) for document in documents]

        with store.locks.hold(keys):
            existing = store.find_by_logical_keys(list(dict.fromkeys(keys)))
            plan = plan_reconciliation(documents, existing, store.key_field)
            self.logger.info(
                "reconcile-plan",
                table=store.table_name,
                candidates=len(documents),
                existing=len(existing),
                inserts=len(plan.inserts),
                deletes=len(plan.delete_ids),
                skipped=len(plan.skipped_keys),
            )
            if plan.is_noop:
                return ReconcileOutcome(skipped_keys=plan.skipped_keys)
            inserted = store.replace_documents(plan.delete_ids, plan.inserts)

        return ReconcileOutcome(
            inserted_ids=tuple(inserted),
            deleted_ids=plan.delete_ids,
            skipped_keys=plan.skipped_keys,
        )
