"""Retrieval recorder command line interface.

Entry point for the retrieval-recorder CLI tool.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import ValidationError

from retrieval_recorder import __version__
from retrieval_recorder.core.config import RecorderConfig, load_config

__all__ = ["app"]

app = typer.Typer(
    name="retrieval-recorder",
    help="Retrieval event recorder: ingest retrieval telemetry and export metrics.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"retrieval-recorder version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Raises:
        typer.Exit: If an explicit env_file does not exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


def _load_config_or_exit(config_file: Path | None, overrides: dict[str, Any]) -> RecorderConfig:
    try:
        return load_config(config_file=config_file, cli_overrides=overrides)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except yaml.YAMLError as e:
        typer.echo(f"YAML syntax error in {config_file}: {e}", err=True)
        raise typer.Exit(1) from None
    except ValueError as e:
        # pydantic.ValidationError is a ValueError subclass
        if isinstance(e, ValidationError):
            typer.echo("Configuration errors:", err=True)
            for error in e.errors():
                loc = ".".join(str(part) for part in error["loc"])
                typer.echo(f"  - {loc}: {error['msg']}", err=True)
        else:
            typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _apply_logging_config(ctx: typer.Context, config: RecorderConfig) -> None:
    """Reconfigure logging from the config file; CLI flags still win."""
    from retrieval_recorder.core.logging import configure_logging

    flags = ctx.obj or {}
    level = "DEBUG" if flags.get("verbose") else config.logging.level
    configure_logging(json_output=flags.get("json_logs", False) or config.logging.json_output, level=level)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs.",
    ),
) -> None:
    """Retrieval event recorder."""
    from retrieval_recorder.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")
    ctx.obj = {"verbose": verbose, "json_logs": json_logs}

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


@app.command()
def serve(
    ctx: typer.Context,
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file.",
    ),
    host: str | None = typer.Option(None, "--host", help="Host address to bind to."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on."),
    database: str | None = typer.Option(None, "--database", "-d", help="Event log database URL."),
    no_resolve: bool = typer.Option(
        False,
        "--no-resolve",
        help="Disable storage provider id resolution.",
    ),
) -> None:
    """Run the HTTP recorder."""
    import uvicorn

    from retrieval_recorder.ingress.server import create_app

    overrides: dict[str, Any] = {}
    server_overrides = {key: value for key, value in (("host", host), ("port", port)) if value is not None}
    if server_overrides:
        overrides["server"] = server_overrides
    if database is not None:
        overrides["database"] = {"url": database}
    if no_resolve:
        overrides["providers"] = {"enabled": False}

    config = _load_config_or_exit(config_file, overrides)
    _apply_logging_config(ctx, config)
    application = create_app(config)
    typer.echo(f"Starting retrieval recorder on http://{config.server.host}:{config.server.port}")
    uvicorn.run(application, host=config.server.host, port=config.server.port, log_config=None)


@app.command("show-config")
def show_config(
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file.",
    ),
) -> None:
    """Print the effective configuration as YAML."""
    config = _load_config_or_exit(config_file, {})
    typer.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False), nl=False)


_SUMMARY_LABELS: tuple[tuple[str, str], ...] = (
    ("totalAttempts", "Total Attempts"),
    ("attemptedBitswap", "Attempted Bitswap"),
    ("attemptedGraphSync", "Attempted GraphSync"),
    ("attemptedBoth", "Attempted Both"),
    ("attemptedEither", "Attempted Either"),
    ("bitswapSuccesses", "Bitswap Successes"),
    ("graphSyncSuccesses", "GraphSync Successes"),
    ("avgBandwidth", "Average Bandwidth"),
    ("firstByte", "Time to first byte"),
    ("downloadSize", "Download Size"),
    ("graphsyncAttemptsPastQuery", "GraphSync Attempts Past Query"),
)


@app.command()
def stats(
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file.",
    ),
    database: str | None = typer.Option(None, "--database", "-d", help="Event log database URL."),
    wipe: bool = typer.Option(False, "--wipe", help="Delete the lifecycle event log after summarizing."),
    json_output: bool = typer.Option(False, "--json", help="Print the summary as JSON."),
) -> None:
    """Summarize the stored lifecycle event log."""
    from retrieval_recorder.storage import EventRepository, RecorderDB, StorageError, summarize_events

    overrides: dict[str, Any] = {} if database is None else {"database": {"url": database}}
    config = _load_config_or_exit(config_file, overrides)
    if not config.database.url:
        typer.echo("Error: no database configured (use --database or RETRIEVAL_RECORDER_DB_DSN)", err=True)
        raise typer.Exit(1)

    try:
        with RecorderDB(config.database.url) as db:
            repository = EventRepository(db)
            summary = summarize_events(repository.fetch_events())
            if json_output:
                typer.echo(json.dumps(summary.to_dict(), indent=2))
            else:
                values = summary.to_dict()
                width = max(len(label) for _, label in _SUMMARY_LABELS)
                for key, label in _SUMMARY_LABELS:
                    typer.echo(f"{label.ljust(width)}  {values[key]}")
            if wipe:
                deleted = repository.wipe_events()
                typer.echo(f"Wiped {deleted} events from the event log.", err=True)
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


if __name__ == "__main__":
    app()
