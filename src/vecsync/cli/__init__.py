"""Command-line interface for :mod:`vecsync`.

Example:
    >>> import typer
    >>> from vecsync.cli import create_app
    >>> isinstance(create_app(), typer.Typer)
    True
"""

from __future__ import annotations

from pathlib import Path

import typer

from vecsync.cli.index import create_index_app
from vecsync.core.config import (
    DEFAULTS_RESOURCE_NAME,
    USER_CONFIG_NAME,
    load_app_config,
    render_user_config,
)
from vecsync.core.logging import configure_logging, get_logger
from vecsync.modules.vdb.errors import ConfigurationError

_app_help = (
    "Vector-embedding indexes kept in step with relational tables."
    "\n\n"
    "Use `vecsync init` to write a starter `vecsync.toml`."
)


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``vecsync`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
    )

    app.add_typer(create_index_app(), name="index")

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Write a vecsync.toml seeded with the packaged defaults.",
    )
    def init_command(
        path: Path = typer.Option(
            Path(USER_CONFIG_NAME),
            "--path",
            "-p",
            help="Destination of the generated config file.",
        ),
        database: Path | None = typer.Option(
            None,
            "--database",
            "-d",
            help="SQLite database recorded under [connection].",
        ),
        force: bool = typer.Option(
            False,
            "--force",
            help="Overwrite an existing config file.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Generate a starter configuration file."""

        if path.exists() and not force:
            typer.secho(
                f"{path} already exists; pass --force to overwrite it.",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)

        overrides: dict[str, object] = {}
        if log_level:
            overrides["log_level"] = log_level
        if database is not None:
            overrides["connection"] = {"database": str(database)}

        try:
            config = load_app_config(
                config_path=path,
                cli_overrides=overrides,
            )
        except ConfigurationError as exc:
            typer.secho(
                f"Failed to build configuration: {exc}",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1) from exc

        configure_logging(level=config.log_level, log_dir=config.log_dir)
        logger = get_logger(__name__, command="init")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_user_config(config), encoding="utf-8")
        logger.info("init-complete", path=str(path), force=force)

        typer.secho("Configuration written", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  config: {path}")
        typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
        typer.echo(f"  log level: {config.log_level}")
        typer.echo(f"  database: {config.connection.database or 'unset'}")

    return app


__all__ = ["create_app"]
