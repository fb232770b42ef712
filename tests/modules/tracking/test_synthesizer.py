from __future__ import annotations

import json
from dataclasses import dataclass

import pytest
from pydantic import BaseModel

from vecsync.modules.tracking import (
    DocumentSynthesizer,
    FieldSpec,
    TrackingSpec,
    default_transform,
)
from vecsync.modules.vdb.errors import ConfigurationError


def _transform_text(value):
    if not value:
        return None
    return f"transformed text: {value}"


def _transform_json(value):
    if not value:
        return None
    return f"transformed: {json.dumps(value, separators=(',', ':'))}"


def _transform_relations(value):
    if not value:
        return None
    return "Rel: " + ", ".join(item["title"] for item in value)


def test_entity_content_and_metadata() -> None:
    spec = TrackingSpec(
        ["text", "json"],
        ["optional", ("optionalTransform", lambda value: (value or {}).get("inner"))],
    )
    synthesizer = DocumentSynthesizer(spec)

    document = synthesizer.synthesize(
        {
            "id": 1,
            "text": "test text",
            "json": {"k": "v"},
            "optional": "o1",
            "optionalTransform": {"inner": "inner value"},
            "notEmbedding": "ignored",
        }
    )

    assert document.page_content == 'test text {"k":"v"}'
    assert document.metadata == {
        "optional": "o1",
        "optionalTransform": "inner value",
        "id": 1,
    }


def test_field_transforms_and_relations() -> None:
    spec = TrackingSpec(
        [
            ("text", _transform_text),
            ("json_object", _transform_json),
            ("relations", _transform_relations),
        ]
    )
    entity = {
        "id": 7,
        "text": "text",
        "json_object": {"key1": "key1", "key2": "key2"},
        "relations": [{"id": 1, "title": "rel1"}],
    }

    document = DocumentSynthesizer(spec).synthesize(entity)

    assert document.page_content == (
        'transformed text: text transformed: {"key1":"key1","key2":"key2"} '
        "Rel: rel1"
    )


def test_synthesis_is_deterministic_and_order_sensitive() -> None:
    entity = {"id": "a", "first": "one", "second": {"b": 2, "a": 1}}
    forward = DocumentSynthesizer(TrackingSpec(["first", "second"]))
    backward = DocumentSynthesizer(TrackingSpec(["second", "first"]))

    assert forward.synthesize(entity) == forward.synthesize(dict(entity))
    assert forward.render_content(entity) == 'one {"a":1,"b":2}'
    assert backward.render_content(entity) == '{"a":1,"b":2} one'


def test_missing_fields_are_skipped_and_none_kept_as_null() -> None:
    spec = TrackingSpec(["text", "json", "missing"], ["optional", "absent"])
    synthesizer = DocumentSynthesizer(spec, document_key="entity_id")

    document = synthesizer.synthesize(
        {"id": 3, "text": "", "json": {}, "optional": None}
    )

    assert document.page_content == ""
    assert document.metadata == {"optional": None, "entity_id": 3}
    assert not synthesizer.has_content({"id": 3, "text": "", "json": []})
    assert synthesizer.has_content({"id": 3, "text": "x"})


def test_key_injection_overwrites_metadata_field() -> None:
    spec = TrackingSpec(["text"], ["id"], entity_key="pk")

    document = DocumentSynthesizer(spec, document_key="id").synthesize(
        {"pk": 9, "id": "stale", "text": "t"}
    )

    assert document.metadata == {"id": 9}


def test_attribute_entities_are_supported() -> None:
    @dataclass
    class Note:
        id: int
        title: str
        done: bool

    spec = TrackingSpec(["title", "done"], ["done"])

    document = DocumentSynthesizer(spec).synthesize(Note(4, "write tests", False))

    assert document.page_content == "write tests false"
    assert document.metadata == {"done": False, "id": 4}


def test_default_transform_renders_values() -> None:
    class Payload(BaseModel):
        b: int
        a: str

    @dataclass
    class Point:
        y: int
        x: int

    assert default_transform(None) is None
    assert default_transform([]) is None
    assert default_transform(True) == "true"
    assert default_transform(3.5) == "3.5"
    assert default_transform(["x", 1]) == '["x",1]'
    assert default_transform(Payload(b=1, a="z")) == '{"a":"z","b":1}'
    assert default_transform(Point(y=2, x=1)) == '{"x":1,"y":2}'


def test_transform_returning_non_string_uses_default_rendering() -> None:
    spec = TrackingSpec([FieldSpec("count", lambda value: value * 2)])

    assert DocumentSynthesizer(spec).render_content({"count": 21}) == "42"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content_fields": []},
        {"content_fields": ["a", "a"]},
        {"content_fields": ["a"], "metadata_fields": ["b", "b"]},
        {"content_fields": [""]},
        {"content_fields": [("a", "not callable")]},
        {"content_fields": ["a"], "entity_key": ""},
    ],
)
def test_invalid_tracking_specs(kwargs) -> None:
    with pytest.raises(ConfigurationError):
        TrackingSpec(**kwargs)


def test_tracked_names_cover_content_and_metadata() -> None:
    spec = TrackingSpec(["text", "json"], ["optional"])

    assert spec.tracked_names == frozenset({"text", "json", "optional"})
    assert spec.content_names == ("text", "json")
    assert spec.metadata_names == ("optional",)
