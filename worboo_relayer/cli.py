"""
CLI entry point for the Worboo reward relayer.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from .checkpoint import CorruptCheckpointError
from .config import ConfigurationError, Settings, load_settings
from .logging_setup import configure_logging
from .relayer import RewardRelayer
from .store import CorruptStoreError, ProcessedEventStore

logger = structlog.get_logger()

app = typer.Typer(
    name="worboo-relayer",
    help="Worboo GameRecorded reward relayer",
    add_completion=False,
)


async def _run_relayer(settings: Settings) -> None:
    relayer = await RewardRelayer.from_settings(settings)
    relayer.install_signal_handlers()
    await relayer.run()


@app.command()
def run(
    env_file: Optional[Path] = typer.Option(
        None,
        "--env-file",
        "-e",
        help="Path to .env configuration file",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Render console logs as JSON",
    ),
) -> None:
    """
    Watch GameRecorded events and mint rewards until interrupted.
    """
    try:
        settings = load_settings(env_file)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1)

    configure_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
        json_console=json_logs,
    )

    try:
        asyncio.run(_run_relayer(settings))
    except CorruptStoreError as e:
        logger.error("store_corrupt", path=str(e.path), line=e.line_number, error=str(e))
        raise typer.Exit(code=1)
    except CorruptCheckpointError as e:
        logger.error("checkpoint_corrupt", path=str(e.path), error=str(e))
        raise typer.Exit(code=1)
    except OSError as e:
        logger.error("startup_failed", error=str(e))
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("\nStopping relayer...")


@app.command("store-info")
def store_info(
    path: Path = typer.Argument(..., help="Processed-event log to inspect"),
    max_entries: Optional[int] = typer.Option(
        None,
        "--max-entries",
        help="Apply this retention limit while opening (rewrites the file if exceeded)",
    ),
    show_keys: bool = typer.Option(False, "--show-keys", help="List every stored key"),
) -> None:
    """
    Show the contents of a processed-event store.
    """
    if not path.is_file():
        typer.echo(f"Store not found: {path}", err=True)
        raise typer.Exit(code=1)

    async def _open() -> ProcessedEventStore:
        store = await ProcessedEventStore.open(path, max_entries=max_entries)
        await store.close()
        return store

    try:
        store = asyncio.run(_open())
    except CorruptStoreError as e:
        typer.echo(f"Corrupt store: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Path: {store.path}")
    typer.echo(f"Entries: {store.size}")
    if store.max_entries:
        typer.echo(f"Max entries: {store.max_entries}")

    if show_keys:
        typer.echo("")
        for record in store.records():
            typer.echo(f"  {record.key}  mint={record.tx_hash}  at={record.minted_at}")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from worboo_relayer import __version__
    typer.echo(f"worboo-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
