"""Typer command group for vector index operations."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer

from vecsync.core.config import AppConfig, load_app_config
from vecsync.core.logging import Logger, configure_logging, get_logger
from vecsync.modules.registry import VectorStoreRegistry, build_store_registry
from vecsync.modules.tracking import (
    BackfillCoordinator,
    DocumentSynthesizer,
    SqliteEntitySource,
    TrackingSpec,
)
from vecsync.modules.vdb.errors import (
    ConfigurationError,
    EmbeddingProviderError,
    VectorStoreError,
)
from vecsync.modules.vdb.models import IndexedDocument
from vecsync.modules.vdb.store import VectorIndexStore

_FAILURES = (VectorStoreError, EmbeddingProviderError, ValueError, TypeError)


@dataclass(slots=True)
class IndexCLIContext:
    """Shared context carried across ``vecsync index`` commands."""

    config: AppConfig
    registry: VectorStoreRegistry
    store: VectorIndexStore
    logger: Logger


def _require_context(ctx: typer.Context) -> IndexCLIContext:
    context = getattr(ctx, "obj", None)
    if not isinstance(context, IndexCLIContext):
        typer.secho(
            "Internal error: index context not initialized.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return context


def _handle_failure(action: str, error: Exception, *, logger: Logger) -> None:
    typer.secho(f"Index {action} failed: {error}", fg=typer.colors.RED)
    logger.error(
        "index-action-failed",
        action=action,
        error=str(error),
        error_type=error.__class__.__name__,
    )
    raise typer.Exit(code=1) from error


def _parse_filter(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(
            f"filter is not valid JSON: {exc}",
            param_hint="--filter",
        ) from exc
    if not isinstance(payload, dict):
        raise typer.BadParameter(
            "filter must be a JSON object",
            param_hint="--filter",
        )
    return payload


def _load_documents(path: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(
            f"{path} is not valid JSON: {exc}",
            param_hint="DOCUMENTS",
        ) from exc
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list) or not all(
        isinstance(item, dict) for item in payload
    ):
        raise typer.BadParameter(
            f"{path} must hold a document object or a list of them",
            param_hint="DOCUMENTS",
        )
    return payload


def _echo_documents(
    documents: list[IndexedDocument],
    *,
    json_output: bool,
    distances: list[float] | None = None,
) -> None:
    if json_output:
        payload = [document.to_mapping() for document in documents]
        if distances is not None:
            for item, distance in zip(payload, distances):
                item["distance"] = distance
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    if not documents:
        typer.secho("No documents found.", fg=typer.colors.YELLOW)
        return
    for position, document in enumerate(documents):
        header = f"Document {document.id}"
        if distances is not None:
            header = f"{header} (distance {distances[position]:.4f})"
        typer.secho(header, fg=typer.colors.CYAN, bold=True)
        typer.echo(f"  content: {document.page_content}")
        typer.echo(
            f"  metadata: {json.dumps(document.metadata, sort_keys=True)}"
        )


def create_index_app() -> typer.Typer:
    """Return the ``vecsync index`` command group."""

    index_app = typer.Typer(
        name="index",
        help=(
            "Inspect and maintain a vector index table: add, upsert, find, "
            "delete, search, and backfill documents."
        ),
        no_args_is_help=True,
        invoke_without_command=False,
    )

    @index_app.callback()
    def configure_index_commands(
        ctx: typer.Context,
        config_path: Path | None = typer.Option(
            None,
            "--config",
            "-c",
            help="Path to vecsync.toml (defaults to ./vecsync.toml).",
        ),
        database: Path | None = typer.Option(
            None,
            "--database",
            "-d",
            help="SQLite database holding the index tables.",
        ),
        table: str | None = typer.Option(
            None,
            "--table",
            "-t",
            help="Index table to operate on (defaults to the configured one).",
        ),
        provider: str | None = typer.Option(
            None,
            "--provider",
            help="Embedding provider key, e.g. `openai` or `fake`.",
        ),
        model: str | None = typer.Option(
            None,
            "--model",
            "-m",
            help="Embedding model name passed to the provider.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override log level (defaults to config log_level).",
        ),
    ) -> None:
        """Load configuration and open the selected index table."""

        overrides: dict[str, Any] = {}
        if database is not None:
            overrides["connection"] = {"database": str(database)}
        embedding: dict[str, Any] = {}
        if provider:
            embedding["provider"] = provider
        if model:
            embedding["model"] = model
        if embedding:
            overrides["embedding"] = embedding
        if log_level:
            overrides["log_level"] = log_level

        try:
            config = load_app_config(
                config_path=config_path,
                cli_overrides=overrides,
            )
        except ConfigurationError as exc:
            typer.secho(
                f"Failed to load configuration: {exc}",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1) from exc

        try:
            configure_logging(level=config.log_level, log_dir=config.log_dir)
        except ValueError as exc:
            typer.secho(f"Logging error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
        logger = get_logger(__name__, command="index")

        configured = config.table_names()
        if table is None and len(configured) > 1:
            typer.secho(
                (
                    "Multiple index tables configured "
                    f"({', '.join(configured)}); choose one with --table."
                ),
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        target = table or configured[0]

        try:
            registry = build_store_registry(
                config,
                tables=[target],
                logger=logger,
            )
        except VectorStoreError as exc:
            typer.secho(f"Failed to open index: {exc}", fg=typer.colors.RED)
            logger.error("index-open-failed", table=target, error=str(exc))
            raise typer.Exit(code=1) from exc

        ctx.obj = IndexCLIContext(
            config=config,
            registry=registry,
            store=registry.get(target),
            logger=logger.bind(table=target),
        )

    @index_app.command(
        "ensure",
        help="Create the index table and its logical-key index if missing.",
    )
    def ensure_index(ctx: typer.Context) -> None:
        context = _require_context(ctx)
        store = context.store
        try:
            store.ensure_index()
            model = store.embedding_model()
            stored_dim = store.indexed_dimension()
        except _FAILURES as exc:
            _handle_failure("ensure", exc, logger=context.logger)
        typer.secho(
            (
                f"Index table {store.table_name} ready in {store.database} "
                f"(model {model.key}, dim {model.dim if model.dim else 'unknown'})"
            ),
            fg=typer.colors.GREEN,
        )
        if stored_dim is not None and model.dim and stored_dim != model.dim:
            typer.secho(
                (
                    f"Stored embeddings have dim {stored_dim}; new inserts "
                    f"with {model.key} will be rejected."
                ),
                fg=typer.colors.YELLOW,
            )
        context.logger.info(
            "index-ensure",
            model=model.key,
            dim=model.dim,
            stored_dim=stored_dim,
        )

    @index_app.command("count", help="Count documents matching a filter.")
    def count_documents(
        ctx: typer.Context,
        filter_: str | None = typer.Option(
            None,
            "--filter",
            "-f",
            metavar="JSON",
            help="Metadata containment filter (defaults to the table filter).",
        ),
    ) -> None:
        context = _require_context(ctx)
        parsed = _parse_filter(filter_) if filter_ is not None else None
        try:
            total = context.store.count(parsed)
        except _FAILURES as exc:
            _handle_failure("count", exc, logger=context.logger)
        typer.echo(str(total))
        context.logger.info("index-count", count=total)

    @index_app.command(
        "add",
        help=(
            "Embed and insert documents from a JSON file holding objects with "
            "`page_content` and `metadata`."
        ),
    )
    def add_documents(
        ctx: typer.Context,
        documents: Path = typer.Argument(
            ...,
            metavar="DOCUMENTS",
            exists=True,
            dir_okay=False,
            readable=True,
            help="JSON file with one document or a list of documents.",
        ),
    ) -> None:
        context = _require_context(ctx)
        payload = _load_documents(documents)
        try:
            ids = context.store.add_documents(payload)
        except _FAILURES as exc:
            _handle_failure("add", exc, logger=context.logger)
        typer.secho(f"Inserted {len(ids)} documents", fg=typer.colors.GREEN)
        for identifier in ids:
            typer.echo(f"  {identifier}")
        context.logger.info("index-add", inserted=len(ids))

    @index_app.command(
        "upsert",
        help=(
            "Reconcile documents by their logical key: unchanged documents are "
            "skipped, changed ones replaced."
        ),
    )
    def upsert_documents(
        ctx: typer.Context,
        documents: Path = typer.Argument(
            ...,
            metavar="DOCUMENTS",
            exists=True,
            dir_okay=False,
            readable=True,
            help="JSON file with one document or a list of documents.",
        ),
    ) -> None:
        context = _require_context(ctx)
        payload = _load_documents(documents)
        try:
            outcome = context.store.upsert_documents(payload)
        except _FAILURES as exc:
            _handle_failure("upsert", exc, logger=context.logger)
        typer.secho(
            (
                f"Upserted: {outcome.inserted} inserted, {outcome.deleted} "
                f"deleted, {outcome.skipped} unchanged"
            ),
            fg=typer.colors.GREEN,
        )
        context.logger.info(
            "index-upsert",
            inserted=outcome.inserted,
            deleted=outcome.deleted,
            skipped=outcome.skipped,
        )

    @index_app.command("find", help="List documents matching any filter.")
    def find_documents(
        ctx: typer.Context,
        filters: list[str] = typer.Option(
            None,
            "--filter",
            "-f",
            metavar="JSON",
            help="Metadata containment filter; repeat to OR several filters.",
        ),
        json_output: bool = typer.Option(
            False,
            "--json",
            help="Emit the matching documents as JSON.",
        ),
    ) -> None:
        context = _require_context(ctx)
        parsed = [_parse_filter(raw) for raw in filters] if filters else None
        try:
            found = context.store.find_documents(parsed)
        except _FAILURES as exc:
            _handle_failure("find", exc, logger=context.logger)
        _echo_documents(found, json_output=json_output)
        context.logger.info("index-find", count=len(found))

    @index_app.command("delete", help="Delete documents matching any filter.")
    def delete_documents(
        ctx: typer.Context,
        filters: list[str] = typer.Option(
            ...,
            "--filter",
            "-f",
            metavar="JSON",
            help="Metadata containment filter; repeat to OR several filters.",
        ),
    ) -> None:
        context = _require_context(ctx)
        parsed = [_parse_filter(raw) for raw in filters]
        try:
            deleted = context.store.delete_documents(parsed)
        except _FAILURES as exc:
            _handle_failure("delete", exc, logger=context.logger)
        typer.secho(f"Deleted {deleted} documents", fg=typer.colors.GREEN)
        context.logger.info("index-delete", deleted=deleted)

    @index_app.command(
        "search",
        help="Return the documents nearest to QUERY with their distances.",
    )
    def search_documents(
        ctx: typer.Context,
        query: str = typer.Argument(..., metavar="QUERY"),
        k: int = typer.Option(
            4,
            "--k",
            "-k",
            min=1,
            help="Maximum number of results.",
        ),
        filter_: str | None = typer.Option(
            None,
            "--filter",
            "-f",
            metavar="JSON",
            help="Metadata containment filter (defaults to the table filter).",
        ),
        json_output: bool = typer.Option(
            False,
            "--json",
            help="Emit results as JSON including a `distance` field.",
        ),
    ) -> None:
        context = _require_context(ctx)
        parsed = _parse_filter(filter_) if filter_ is not None else None
        try:
            hits = context.store.similarity_search_with_score(query, k, parsed)
        except _FAILURES as exc:
            _handle_failure("search", exc, logger=context.logger)
        _echo_documents(
            [document for document, _ in hits],
            json_output=json_output,
            distances=[distance for _, distance in hits],
        )
        context.logger.info("index-search", k=k, results=len(hits))

    @index_app.command(
        "backfill",
        help=(
            "Index every row of SOURCE_TABLE that has no document yet. The "
            "source table must live in a SQLite database."
        ),
    )
    def backfill_table(
        ctx: typer.Context,
        source_table: str = typer.Argument(..., metavar="SOURCE_TABLE"),
        content: list[str] = typer.Option(
            ...,
            "--content",
            metavar="COLUMN",
            help="Column rendered into page content; repeat in order.",
        ),
        metadata: list[str] = typer.Option(
            None,
            "--metadata",
            metavar="COLUMN",
            help="Column copied into document metadata; repeatable.",
        ),
        primary_key: str = typer.Option(
            "id",
            "--primary-key",
            help="Primary-key column of SOURCE_TABLE.",
        ),
        source_database: Path | None = typer.Option(
            None,
            "--source-database",
            help="Database holding SOURCE_TABLE (defaults to the index one).",
        ),
        json_columns: list[str] = typer.Option(
            None,
            "--json-column",
            metavar="COLUMN",
            help="Column holding JSON text to decode before rendering.",
        ),
    ) -> None:
        context = _require_context(ctx)
        store = context.store
        try:
            spec = TrackingSpec(
                tuple(content),
                tuple(metadata or ()),
                entity_key=primary_key,
            )
            source = SqliteEntitySource(
                database=source_database or store.database,
                table=source_table,
                primary_key=primary_key,
                json_columns=tuple(json_columns or ()),
                timeout=context.config.connection.timeout,
                logger=context.logger.bind(component="entity-source"),
            )
            coordinator = BackfillCoordinator(
                store=store,
                source=source,
                synthesizer=DocumentSynthesizer(
                    spec,
                    document_key=store.key_field,
                ),
                logger=context.logger.bind(component="backfill"),
            )
            report = coordinator.backfill()
        except _FAILURES as exc:
            _handle_failure("backfill", exc, logger=context.logger)
        typer.secho(
            (
                f"Backfill complete: {report.inserted} inserted, "
                f"{report.skipped} skipped of {report.missing} missing"
            ),
            fg=typer.colors.GREEN,
        )

    return index_app


__all__ = ["IndexCLIContext", "create_index_app"]
