"""Translate metadata containment filters into parameterized SQLite predicates.

A filter is a mapping whose key/value pairs must all be contained in the
stored metadata document. A filter *set* is OR-ed. Every predicate is built
independently with bound parameters, so one malformed filter raises
:class:`MalformedFilterError` before any statement runs instead of degrading
the combined predicate.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .errors import MalformedFilterError

__all__ = [
    "Predicate",
    "build_containment_predicate",
    "build_filter_set_predicate",
    "json_path",
]

_METADATA_COLUMN = "metadata"


@dataclass(frozen=True, slots=True)
class Predicate:
    """SQL fragment paired with its positional parameters."""

    sql: str
    params: tuple[Any, ...] = ()

    @classmethod
    def always(cls) -> "Predicate":
        return cls("1 = 1")


def json_path(segments: Sequence[str]) -> str:
    """Return a quoted SQLite JSON path for ``segments``.

    Example:
        >>> json_path(["owner", "team.name"])
        '$."owner"."team.name"'
    """

    parts = ["$"]
    for segment in segments:
        if not isinstance(segment, str) or not segment:
            raise MalformedFilterError(
                f"Filter keys must be non-empty strings (got {segment!r})."
            )
        if '"' in segment or "\\" in segment:
            raise MalformedFilterError(
                f"Filter key {segment!r} contains unsupported characters."
            )
        parts.append(f'"{segment}"')
    return ".".join(parts)


def _scalar_clause(path: str, value: Any) -> Predicate:
    if value is None:
        return Predicate(f"json_type({_METADATA_COLUMN}, ?) = 'null'", (path,))
    if isinstance(value, bool):
        return Predicate(
            f"json_type({_METADATA_COLUMN}, ?) = ?",
            (path, "true" if value else "false"),
        )
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise MalformedFilterError(
                f"Filter value at {path} must be finite (got {value!r})."
            )
        return Predicate(
            (
                f"json_type({_METADATA_COLUMN}, ?) IN ('integer', 'real') "
                f"AND json_extract({_METADATA_COLUMN}, ?) = ?"
            ),
            (path, path, value),
        )
    if isinstance(value, str):
        return Predicate(
            (
                f"json_type({_METADATA_COLUMN}, ?) = 'text' "
                f"AND json_extract({_METADATA_COLUMN}, ?) = ?"
            ),
            (path, path, value),
        )
    raise MalformedFilterError(
        f"Unsupported filter value at {path}: {type(value).__name__}."
    )


def _array_element_clause(path: str, value: Any) -> Predicate:
    if isinstance(value, (Mapping, list, tuple)):
        raise MalformedFilterError(
            f"Filter arrays at {path} may only contain scalar values."
        )
    if value is None:
        type_sql, params = "type = 'null'", ()
    elif isinstance(value, bool):
        type_sql, params = "type = ?", ("true" if value else "false",)
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise MalformedFilterError(
                f"Filter value at {path} must be finite (got {value!r})."
            )
        type_sql, params = "type IN ('integer', 'real') AND value = ?", (value,)
    elif isinstance(value, str):
        type_sql, params = "type = 'text' AND value = ?", (value,)
    else:
        raise MalformedFilterError(
            f"Unsupported filter value at {path}: {type(value).__name__}."
        )
    return Predicate(
        (
            f"EXISTS (SELECT 1 FROM json_each({_METADATA_COLUMN}, ?) "
            f"WHERE {type_sql})"
        ),
        (path, *params),
    )


def _collect(
    segments: list[str],
    value: Any,
    clauses: list[Predicate],
) -> None:
    path = json_path(segments)
    if isinstance(value, Mapping):
        if not value:
            clauses.append(
                Predicate(
                    f"json_type({_METADATA_COLUMN}, ?) = 'object'",
                    (path,),
                )
            )
            return
        for key, nested in value.items():
            _collect([*segments, key], nested, clauses)
        return
    if isinstance(value, (list, tuple)):
        clauses.append(
            Predicate(
                f"json_type({_METADATA_COLUMN}, ?) = 'array'",
                (path,),
            )
        )
        for element in value:
            clauses.append(_array_element_clause(path, element))
        return
    clauses.append(_scalar_clause(path, value))


def build_containment_predicate(filter_: Mapping[str, Any]) -> Predicate:
    """Return the predicate matching documents whose metadata contains ``filter_``.

    Example:
        >>> predicate = build_containment_predicate({"key": "d1"})
        >>> predicate.params
        ('$."key"', '$."key"', 'd1')
    """

    if not isinstance(filter_, Mapping):
        raise MalformedFilterError(
            f"Filters must be mappings (got {type(filter_).__name__})."
        )
    if not filter_:
        return Predicate.always()

    clauses: list[Predicate] = []
    for key, value in filter_.items():
        _collect([key], value, clauses)

    sql = " AND ".join(f"({clause.sql})" for clause in clauses)
    params = tuple(param for clause in clauses for param in clause.params)
    return Predicate(sql, params)


def build_filter_set_predicate(
    filters: Sequence[Mapping[str, Any]],
) -> Predicate:
    """OR together the containment predicates for ``filters``.

    Raises:
        MalformedFilterError: If ``filters`` is empty or any filter is invalid.
    """

    if isinstance(filters, Mapping) or not isinstance(filters, Sequence):
        raise MalformedFilterError("Filter sets must be a sequence of mappings.")
    if not filters:
        raise MalformedFilterError("Filter sets must contain at least one filter.")

    predicates = [build_containment_predicate(item) for item in filters]
    sql = " OR ".join(f"({predicate.sql})" for predicate in predicates)
    params = tuple(param for predicate in predicates for param in predicate.params)
    return Predicate(sql, params)
