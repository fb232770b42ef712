"""Entity tracking: document synthesis, change handling and backfill."""

from __future__ import annotations

from .backfill import BackfillCoordinator, BackfillReport
from .fields import FieldSpec, TrackingSpec, Transform
from .source import EntitySource, ManyToMany, SqliteEntitySource, many_to_many
from .synthesizer import DocumentSynthesizer, default_transform
from .tracker import EntityChangeTracker

__all__ = [
    "BackfillCoordinator",
    "BackfillReport",
    "DocumentSynthesizer",
    "EntityChangeTracker",
    "EntitySource",
    "FieldSpec",
    "ManyToMany",
    "SqliteEntitySource",
    "TrackingSpec",
    "Transform",
    "default_transform",
    "many_to_many",
]
