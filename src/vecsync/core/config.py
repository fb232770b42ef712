"""Configuration models and loaders for :mod:`vecsync`."""

from __future__ import annotations

import os
from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, ValidationError, field_validator

from vecsync.modules.vdb.errors import ConfigurationError
from vecsync.resources import get_resource

DEFAULTS_RESOURCE_NAME = "vecsync.defaults.toml"
USER_CONFIG_NAME = "vecsync.toml"
ENV_PREFIX = "VECSYNC_"

Metric = Literal["cosine", "l2"]


class EmbeddingSettings(BaseModel):
    """Embedding provider selection and request tuning."""

    provider: str = Field(
        default="openai",
        description="Registered provider key used to build the embedder.",
    )
    model: str = Field(
        default="text-embedding-3-small",
        description="Provider model name passed with every request.",
    )
    batch_size: int | Literal["auto"] = Field(
        default="auto",
        description=(
            "Texts per provider request; ``'auto'`` defers to the chunk size."
        ),
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-specific options (api_key, base_url, dim...).",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.lower()
        if not normalized:
            raise ValueError("embedding provider cannot be empty")
        return normalized

    @field_validator("batch_size")
    @classmethod
    def _validate_batch_size(cls, value: int | str) -> int | str:
        if isinstance(value, int) and value < 1:
            raise ValueError("batch_size must be >= 1 or 'auto'")
        return value


class ConnectionSettings(BaseModel):
    """SQLite connection options shared by every index table."""

    database: Path | None = Field(
        default=None,
        description="Path to the SQLite database holding the index tables.",
    )
    timeout: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds SQLite waits on a locked database.",
    )

    model_config = {"frozen": True}

    @field_validator("database")
    @classmethod
    def _expand(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None


class VectorStoreSettings(BaseModel):
    """Settings for a single vector index table."""

    table_name: str = Field(
        default="document_vectors",
        description="Table holding the indexed documents.",
    )
    version: str = Field(
        default="1",
        description="Format-version tag stamped on every written row.",
    )
    document_primary_key: str = Field(
        default="id",
        description="Metadata field carrying the logical key.",
    )
    chunk_size: int = Field(
        default=500,
        ge=1,
        description="Documents embedded and written per transaction.",
    )
    filter: dict[str, Any] | None = Field(
        default=None,
        description="Default metadata filter applied to reads.",
    )
    metric: Metric = Field(
        default="cosine",
        description="Distance metric used by similarity search.",
    )
    connection: ConnectionSettings = Field(
        default_factory=ConnectionSettings,
        description="Connection options for the backing database.",
    )

    model_config = {
        "frozen": True,
        "str_strip_whitespace": True,
    }

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class TableSettings(BaseModel):
    """Per-table overrides declared under ``[tables.<name>]``."""

    version: str | None = None
    document_primary_key: str | None = None
    chunk_size: int | None = Field(default=None, ge=1)
    filter: dict[str, Any] | None = None
    metric: Metric | None = None
    backfill: bool = Field(
        default=False,
        description="Index rows missing from the table at startup.",
    )

    model_config = {
        "frozen": True,
        "str_strip_whitespace": True,
    }

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class AppConfig(BaseModel):
    """Root configuration for the :mod:`vecsync` application."""

    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    log_dir: Path | None = Field(
        default=None,
        description="Directory receiving rotating JSON logs when set.",
    )
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    vector_store: VectorStoreSettings = Field(
        default_factory=VectorStoreSettings,
    )
    tables: dict[str, TableSettings] = Field(default_factory=dict)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    def table_names(self) -> tuple[str, ...]:
        """Return configured table names, defaulting to the root table."""

        if self.tables:
            return tuple(sorted(self.tables))
        return (self.vector_store.table_name,)

    def table_settings(self, table: str) -> TableSettings:
        return self.tables.get(table, TableSettings())

    def store_settings(self, table: str | None = None) -> VectorStoreSettings:
        """Return the root store settings merged with ``table`` overrides.

        Example:
            >>> config = AppConfig(tables={"notes": {"chunk_size": 10}})
            >>> settings = config.store_settings("notes")
            >>> (settings.table_name, settings.chunk_size)
            ('notes', 10)
        """

        base = self.vector_store.model_dump()
        if table is not None:
            overrides = self.table_settings(table).model_dump(
                exclude={"backfill"},
                exclude_none=True,
            )
            base.update(overrides)
            base["table_name"] = table
        base["connection"] = self.connection
        try:
            return VectorStoreSettings(**base)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid settings for table {table!r}: {exc}"
            ) from exc


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    return get_resource(DEFAULTS_RESOURCE_NAME).read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["vector_store"]["chunk_size"]
        500
    """

    return tomllib.loads(read_packaged_defaults_text())


def read_user_config(path: Path) -> dict[str, Any]:
    """Parse the user ``vecsync.toml`` at ``path``; missing files are empty."""

    if not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Translate ``VECSYNC_*`` variables into a config layer.

    Example:
        >>> env_overrides({"VECSYNC_DATABASE": "index.db"})
        {'connection': {'database': 'index.db'}}
    """

    env = os.environ if environ is None else environ
    layer: dict[str, Any] = {}
    mapping: tuple[tuple[str, tuple[str, ...]], ...] = (
        ("LOG_LEVEL", ("log_level",)),
        ("LOG_DIR", ("log_dir",)),
        ("DATABASE", ("connection", "database")),
        ("EMBEDDING_PROVIDER", ("embedding", "provider")),
        ("EMBEDDING_MODEL", ("embedding", "model")),
        ("TABLE_NAME", ("vector_store", "table_name")),
    )
    for suffix, path in mapping:
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if not value:
            continue
        target = layer
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed user ``vecsync.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Raises:
        ConfigurationError: If the merged payload fails validation.
    """

    stack: dict[str, Any] = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)

    try:
        return AppConfig(**stack)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def load_app_config(
    *,
    config_path: Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Resolve the full precedence stack from disk and the environment."""

    path = config_path or Path.cwd() / USER_CONFIG_NAME
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=read_user_config(path),
        env_config=env_overrides(environ),
        cli_overrides=cli_overrides,
    )


def _store_table(settings: VectorStoreSettings) -> tomlkit.items.Table:
    table = tomlkit.table()
    table["table_name"] = settings.table_name
    table["version"] = settings.version
    table["document_primary_key"] = settings.document_primary_key
    table["chunk_size"] = settings.chunk_size
    table["metric"] = settings.metric
    if settings.filter:
        table["filter"] = settings.filter
    return table


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``vecsync.toml`` template for users to customize."""

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by vecsync init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > vecsync.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Environment overrides:"))
        document.add(tomlkit.comment("  VECSYNC_DATABASE=/path/to/index.db"))
        document.add(tomlkit.comment("  VECSYNC_LOG_LEVEL=info"))
        document.add(tomlkit.nl())

    document["log_level"] = config.log_level
    if config.log_dir is not None:
        document["log_dir"] = str(config.log_dir)

    embedding = tomlkit.table()
    embedding["provider"] = config.embedding.provider
    embedding["model"] = config.embedding.model
    embedding["batch_size"] = config.embedding.batch_size
    options = tomlkit.table()
    for key in sorted(config.embedding.options):
        options[key] = config.embedding.options[key]
    embedding["options"] = options
    document["embedding"] = embedding

    connection = tomlkit.table()
    if config.connection.database is not None:
        connection["database"] = str(config.connection.database)
    elif include_defaults:
        connection.add(tomlkit.comment('database = "vecsync.db"'))
    connection["timeout"] = config.connection.timeout
    document["connection"] = connection

    document["vector_store"] = _store_table(config.vector_store)

    if config.tables:
        tables = tomlkit.table(is_super_table=True)
        for name in sorted(config.tables):
            overrides = config.tables[name].model_dump(exclude_none=True)
            entry = tomlkit.table()
            for key in sorted(overrides):
                entry[key] = overrides[key]
            tables.add(name, entry)
        document["tables"] = tables

    return tomlkit.dumps(document)


def iter_table_settings(
    config: AppConfig,
) -> Iterable[tuple[str, VectorStoreSettings, TableSettings]]:
    """Yield ``(table, store settings, table overrides)`` for every table."""

    for name in config.table_names():
        yield name, config.store_settings(name), config.table_settings(name)


__all__ = [
    "AppConfig",
    "ConnectionSettings",
    "DEFAULTS_RESOURCE_NAME",
    "EmbeddingSettings",
    "ENV_PREFIX",
    "TableSettings",
    "USER_CONFIG_NAME",
    "VectorStoreSettings",
    "env_overrides",
    "iter_table_settings",
    "load_app_config",
    "load_config",
    "load_packaged_defaults",
    "read_packaged_defaults_text",
    "read_user_config",
    "render_user_config",
]
