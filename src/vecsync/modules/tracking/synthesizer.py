"""Build indexable documents from tracked entity fields."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from vecsync.modules.vdb.models import Document

from .fields import FieldSpec, TrackingSpec

__all__ = ["DocumentSynthesizer", "default_transform", "read_field"]

_MISSING = object()


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value


def _canonical_json(value: Any) -> str:
    return json.dumps(
        _jsonable(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, Mapping, list, tuple)):
        return len(value) == 0
    return False


def default_transform(value: Any) -> str | None:
    """Render ``value`` as content text, or ``None`` when it contributes nothing.

    Example:
        >>> default_transform({"key2": "b", "key1": "a"})
        '{"key1":"a","key2":"b"}'
        >>> default_transform(True)
        'true'
        >>> default_transform("") is None
        True
    """

    if _is_empty(value):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, BaseModel)) or (
        isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray))
    ):
        return _canonical_json(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _canonical_json(value)
    return str(value)


def read_field(entity: Any, name: str, default: Any = None) -> Any:
    """Return ``entity[name]`` for mappings, else ``getattr(entity, name)``."""

    if isinstance(entity, Mapping):
        return entity.get(name, default)
    return getattr(entity, name, default)


class DocumentSynthesizer:
    """Pure mapping from an entity onto ``(page_content, metadata)``."""

    def __init__(self, spec: TrackingSpec, document_key: str = "id") -> None:
        self.spec = spec
        self.document_key = document_key

    def render_content(self, entity: Any) -> str:
        parts: list[str] = []
        for field_spec in self.spec.content_fields:
            rendered = self._render_field(field_spec, entity)
            if rendered:
                parts.append(rendered)
        return " ".join(parts)

    def has_content(self, entity: Any) -> bool:
        """Return ``True`` when any content field renders non-empty text."""

        return any(
            self._render_field(field_spec, entity)
            for field_spec in self.spec.content_fields
        )

    def build_metadata(self, entity: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {}
        for field_spec in self.spec.metadata_fields:
            raw = read_field(entity, field_spec.name, _MISSING)
            if raw is _MISSING:
                continue
            value = field_spec.transform(raw) if field_spec.transform else raw
            metadata[field_spec.name] = _jsonable(value)
        metadata[self.document_key] = read_field(entity, self.spec.entity_key)
        return metadata

    def synthesize(self, entity: Any) -> Document:
        """Return the document for ``entity``.

        Example:
            >>> spec = TrackingSpec(["text", "json"], ["optional"])
            >>> synthesizer = DocumentSynthesizer(spec)
            >>> document = synthesizer.synthesize(
            ...     {"id": 1, "text": "test text", "json": {"k": "v"},
            ...      "optional": "o1"}
            ... )
            >>> document.page_content
            'test text {"k":"v"}'
            >>> document.metadata
            {'optional': 'o1', 'id': 1}
        """

        return Document(
            page_content=self.render_content(entity),
            metadata=self.build_metadata(entity),
        )

    @staticmethod
    def _render_field(field_spec: FieldSpec, entity: Any) -> str | None:
        value = read_field(entity, field_spec.name)
        if field_spec.transform is not None:
            value = field_spec.transform(value)
        if isinstance(value, str):
            return value or None
        return default_transform(value)
