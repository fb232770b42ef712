"""Entity sources hydrating tracked rows from the relational store."""

from __future__ import annotations

import json
import re
import sqlite3
from collections import defaultdict
from collections.abc import Hashable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Protocol, runtime_checkable

from vecsync.core.logging import Logger, get_logger
from vecsync.modules.vdb.errors import (
    ConfigurationError,
    TransientStorageError,
    VectorStoreError,
)

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from vecsync.modules.vdb.store import VectorIndexStore

__all__ = [
    "EntitySource",
    "ManyToMany",
    "SqliteEntitySource",
    "many_to_many",
]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_IN_CLAUSE_LIMIT = 500
_INDEX_SCHEMA = "vecsync_index"


def _quote(identifier: str) -> str:
    if not isinstance(identifier, str) or not _IDENTIFIER.match(identifier):
        raise ConfigurationError(
            f"Invalid SQL identifier {identifier!r}; use letters, digits and "
            "underscores only."
        )
    return f'"{identifier}"'


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@runtime_checkable
class EntitySource(Protocol):
    """Read-only access to the rows a tracker indexes."""

    def fetch(self, entity_id: Hashable) -> Mapping[str, Any] | None:
        """Return the current row for ``entity_id`` or ``None`` if gone."""

    def fetch_many(
        self,
        entity_ids: Sequence[Hashable],
    ) -> list[Mapping[str, Any]]:
        """Return current rows for ``entity_ids``; missing ids are skipped."""

    def missing_keys(self, store: "VectorIndexStore") -> list[Hashable]:
        """Return primary keys of rows with no document in ``store``."""


@dataclass(frozen=True, slots=True)
class ManyToMany:
    """Relation loader following a join table onto related rows."""

    attribute: str
    join_table: str
    local_column: str
    remote_table: str
    remote_column: str
    remote_key: str = "id"

    def __post_init__(self) -> None:
        for name in (
            self.join_table,
            self.local_column,
            self.remote_table,
            self.remote_column,
            self.remote_key,
        ):
            _quote(name)
        if not self.attribute:
            raise ConfigurationError("Relation attribute cannot be empty.")

    def load(
        self,
        connection: sqlite3.Connection,
        owner_ids: Sequence[Hashable],
    ) -> dict[Hashable, list[dict[str, Any]]]:
        """Return related rows keyed by owner id, in join-table order."""

        related: defaultdict[Hashable, list[dict[str, Any]]] = defaultdict(list)
        join = _quote(self.join_table)
        remote = _quote(self.remote_table)
        for batch in _chunks(list(owner_ids), _IN_CLAUSE_LIMIT):
            placeholders = ", ".join("?" for _ in batch)
            rows = connection.execute(
                f"SELECT j.{_quote(self.local_column)} AS __owner__, r.* "
                f"FROM {join} AS j JOIN {remote} AS r "
                f"ON r.{_quote(self.remote_key)} = j.{_quote(self.remote_column)} "
                f"WHERE j.{_quote(self.local_column)} IN ({placeholders}) "
                "ORDER BY j.rowid",
                tuple(batch),
            ).fetchall()
            for row in rows:
                payload = dict(row)
                owner = payload.pop("__owner__")
                related[owner].append(payload)
        return related


def many_to_many(
    attribute: str,
    *,
    join_table: str,
    local_column: str,
    remote_table: str,
    remote_column: str,
    remote_key: str = "id",
) -> ManyToMany:
    """Declare a many-to-many relation hydrated onto ``attribute``.

    Example:
        >>> relation = many_to_many(
        ...     "relations",
        ...     join_table="entity_relations",
        ...     local_column="entity_id",
        ...     remote_table="relation_entity",
        ...     remote_column="relation_id",
        ... )
        >>> relation.remote_key
        'id'
    """

    return ManyToMany(
        attribute=attribute,
        join_table=join_table,
        local_column=local_column,
        remote_table=remote_table,
        remote_column=remote_column,
        remote_key=remote_key,
    )


@dataclass(slots=True)
class SqliteEntitySource:
    """Hydrate rows of ``table`` from a SQLite database.

    Columns listed in ``json_columns`` are decoded from JSON text so they
    render as objects rather than strings. Relations are attached as lists
    of plain dicts under their attribute names.
    """

    database: Path
    table: str
    primary_key: str = "id"
    relations: Sequence[ManyToMany] = ()
    json_columns: Sequence[str] = ()
    timeout: float = 5.0
    logger: Logger | None = field(default=None)

    def __post_init__(self) -> None:
        self.database = Path(self.database)
        _quote(self.table)
        _quote(self.primary_key)
        self.relations = tuple(self.relations)
        self.json_columns = tuple(self.json_columns)
        if self.logger is None:
            self.logger = get_logger(
                __name__,
                component="entity-source",
                table=self.table,
            )

    def fetch(self, entity_id: Hashable) -> dict[str, Any] | None:
        rows = self.fetch_many([entity_id])
        return rows[0] if rows else None

    def fetch_many(
        self,
        entity_ids: Sequence[Hashable],
    ) -> list[dict[str, Any]]:
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []
        table = _quote(self.table)
        key = _quote(self.primary_key)
        found: dict[Hashable, dict[str, Any]] = {}
        with self._session("fetch") as connection:
            for batch in _chunks(ids, _IN_CLAUSE_LIMIT):
                placeholders = ", ".join("?" for _ in batch)
                rows = connection.execute(
                    f"SELECT * FROM {table} WHERE {key} IN ({placeholders})",
                    tuple(batch),
                ).fetchall()
                for row in rows:
                    entity = self._decode(dict(row))
                    found[entity[self.primary_key]] = entity
            for relation in self.relations:
                related = relation.load(connection, list(found))
                for owner, entity in found.items():
                    entity[relation.attribute] = related.get(owner, [])
        ordered = [found.pop(entity_id) for entity_id in ids if entity_id in found]
        return ordered + list(found.values())

    def missing_keys(self, store: "VectorIndexStore") -> list[Hashable]:
        """Return keys of rows without an indexed document, computed in SQL.

        The index table is attached when it lives in another database file.
        Keys are fully materialized before the connection closes so callers
        can write to the index afterwards without contending for a lock.
        """

        table = _quote(self.table)
        key = _quote(self.primary_key)
        same_file = store.database.resolve() == self.database.resolve()
        schema = "" if same_file else f"{_INDEX_SCHEMA}."
        index_table = f'{schema}"{store.table_name}"'
        with self._session("missing-keys") as connection:
            if not same_file:
                connection.execute(
                    f"ATTACH DATABASE ? AS {_INDEX_SCHEMA}",
                    (str(store.database),),
                )
            rows = connection.execute(
                f"SELECT s.{key} FROM {table} AS s WHERE NOT EXISTS ("
                f"SELECT 1 FROM {index_table} "
                f"WHERE {store.logical_key_expression()} = s.{key}"
                f") ORDER BY s.{key}"
            ).fetchall()
            missing = [row[0] for row in rows]
            if not same_file:
                connection.execute(f"DETACH DATABASE {_INDEX_SCHEMA}")
        self.logger.debug("entity-source-missing", missing=len(missing))
        return missing

    def _decode(self, entity: dict[str, Any]) -> dict[str, Any]:
        for column in self.json_columns:
            raw = entity.get(column)
            if isinstance(raw, (str, bytes)):
                try:
                    entity[column] = json.loads(raw)
                except json.JSONDecodeError as exc:
                    raise VectorStoreError(
                        f"Column {column!r} of {self.table!r} holds invalid "
                        f"JSON: {exc}"
                    ) from exc
        return entity

    @contextmanager
    def _session(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            connection = sqlite3.connect(self.database, timeout=self.timeout)
        except sqlite3.Error as exc:
            raise TransientStorageError(
                f"Could not open {self.database} for {action}: {exc}"
            ) from exc
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        except sqlite3.OperationalError as exc:
            raise TransientStorageError(
                f"SQLite {action} on {self.table!r} failed: {exc}"
            ) from exc
        except sqlite3.DatabaseError as exc:
            raise VectorStoreError(
                f"SQLite {action} on {self.table!r} failed: {exc}"
            ) from exc
        finally:
            connection.close()
