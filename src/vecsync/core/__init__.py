"""Core utilities shared across :mod:`vecsync` modules.

The core namespace provides configuration loading and logging setup so
feature modules stay lightweight.
"""

from __future__ import annotations

from .config import AppConfig, load_app_config, load_config
from .logging import configure_logging, get_logger

__all__ = [
    "AppConfig",
    "configure_logging",
    "get_logger",
    "load_app_config",
    "load_config",
]
