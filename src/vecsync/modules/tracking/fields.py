"""Declarative field specifications for tracked entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from vecsync.modules.vdb.errors import ConfigurationError

__all__ = ["FieldSpec", "TrackingSpec", "Transform"]

Transform = Callable[[Any], Any]
"""Callable mapping a raw field value onto its indexed representation."""


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """A tracked field name paired with an optional transform."""

    name: str
    transform: Transform | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError(
                f"Field names must be non-empty strings (got {self.name!r})."
            )
        object.__setattr__(self, "name", self.name.strip())
        if self.transform is not None and not callable(self.transform):
            raise ConfigurationError(
                f"Transform for field {self.name!r} must be callable."
            )

    @classmethod
    def coerce(
        cls,
        value: "FieldSpec | str | tuple[str, Transform]",
    ) -> "FieldSpec":
        if isinstance(value, FieldSpec):
            return value
        if isinstance(value, str):
            return cls(value)
        if isinstance(value, tuple) and len(value) == 2:
            return cls(value[0], value[1])
        raise ConfigurationError(f"Unsupported field specification: {value!r}")


def _coerce_fields(
    values: Iterable[FieldSpec | str | tuple[str, Transform]],
    *,
    kind: str,
) -> tuple[FieldSpec, ...]:
    specs = tuple(FieldSpec.coerce(value) for value in values)
    seen: set[str] = set()
    for spec in specs:
        if spec.name in seen:
            raise ConfigurationError(
                f"Duplicate {kind} field {spec.name!r} in tracking spec."
            )
        seen.add(spec.name)
    return specs


@dataclass(frozen=True, slots=True)
class TrackingSpec:
    """Ordered content and metadata fields tracked for one entity type.

    Content field order is part of the synthesized text, so reordering the
    declaration changes every document built from it.

    Example:
        >>> spec = TrackingSpec(["text", "json_object"], ["optional"])
        >>> [field.name for field in spec.content_fields]
        ['text', 'json_object']
        >>> sorted(spec.tracked_names)
        ['json_object', 'optional', 'text']
    """

    content_fields: tuple[FieldSpec, ...]
    metadata_fields: tuple[FieldSpec, ...] = ()
    entity_key: str = "id"
    _tracked: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        content = _coerce_fields(self.content_fields, kind="content")
        metadata = _coerce_fields(self.metadata_fields, kind="metadata")
        if not content:
            raise ConfigurationError(
                "A tracking spec requires at least one content field."
            )
        if not isinstance(self.entity_key, str) or not self.entity_key:
            raise ConfigurationError("entity_key must be a non-empty string.")
        object.__setattr__(self, "content_fields", content)
        object.__setattr__(self, "metadata_fields", metadata)
        object.__setattr__(
            self,
            "_tracked",
            frozenset(spec.name for spec in (*content, *metadata)),
        )

    @property
    def content_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.content_fields)

    @property
    def metadata_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.metadata_fields)

    @property
    def tracked_names(self) -> frozenset[str]:
        """Names of every field whose change requires reconciliation."""

        return self._tracked
