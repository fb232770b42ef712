"""Tests for :mod:`vecsync.resources`."""

from __future__ import annotations

import tomllib

import pytest

from vecsync.resources import get_resource


def test_get_resource_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        get_resource("does-not-exist.toml")


def test_packaged_defaults_are_shipped() -> None:
    payload = tomllib.loads(
        get_resource("vecsync.defaults.toml").read_text(encoding="utf-8")
    )

    assert payload["vector_store"]["table_name"] == "document_vectors"
    assert payload["embedding"]["batch_size"] == "auto"
