"""Command-line entry point: `launchpad-indexer` / `python -m launchpad_indexer`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging

import typer
from dotenv import load_dotenv

from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.pipeline import Pipeline
from launchpad_indexer.storage.database import DatabaseManager

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

app = typer.Typer(help="Chain-event indexer and live push channel for the launch platform.")

logger = logging.getLogger("launchpad_indexer")


def _bootstrap() -> Settings:
    load_dotenv()
    settings = get_settings()
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    return settings


@app.command("run")
def run(
    no_push: bool = typer.Option(False, "--no-push", help="Do not start the WebSocket server."),
) -> None:
    """Run the reconciler loop and the push server until interrupted."""
    settings = _bootstrap()
    pipeline = Pipeline(settings, serve_push=not no_push)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(pipeline.run())


@app.command("tick")
def tick() -> None:
    """Run a single reconciliation tick and print its outcome."""
    settings = _bootstrap()
    if not settings.indexer_enabled:
        logger.error("RPC_URL or FACTORY_CONTRACT not set; nothing to do")
        raise typer.Exit(code=1)

    async def _once() -> dict[str, object]:
        async with Pipeline(settings, serve_push=False, schedule_ticks=False) as pipeline:
            result = await pipeline.tick_once()
            return {
                "from_block": result.from_block,
                "to_block": result.to_block,
                "fetched": result.fetched,
                "applied": result.applied,
                "duplicates": result.duplicates,
                "ignored": result.ignored,
                "error": result.error,
            }

    typer.echo(json.dumps(asyncio.run(_once()), indent=2))


@app.command("init-db")
def init_db() -> None:
    """Create all tables directly from the models (use Alembic in production)."""
    settings = _bootstrap()

    async def _init() -> None:
        manager = DatabaseManager(settings.database.url)
        try:
            await manager.init_schema_async()
        finally:
            await manager.dispose_async()

    asyncio.run(_init())
    typer.echo("Database schema initialized")


@app.command("show-config")
def show_config() -> None:
    """Print the effective configuration with secrets redacted."""
    settings = _bootstrap()
    typer.echo(json.dumps(settings.redacted_summary(), indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
