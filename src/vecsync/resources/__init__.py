"""Packaged resource helpers for :mod:`vecsync`."""

from __future__ import annotations

from importlib import resources
from importlib.resources.abc import Traversable


def get_resource(relative_path: str) -> Traversable:
    """Return a traversable handle to a packaged resource.

    Raises:
        FileNotFoundError: If ``relative_path`` is not shipped with the package.
    """

    candidate = resources.files(__package__).joinpath(relative_path)
    if not candidate.is_file():
        raise FileNotFoundError(relative_path)
    return candidate


__all__ = ["get_resource"]
