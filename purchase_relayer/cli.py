"""
CLI entry point for the purchase relayer.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from .config import RelayerConfig, Settings
from .errors import ConfigurationError

app = typer.Typer(
    name="purchase-relayer",
    help="Relays source-chain purchases into destination-chain payouts",
    add_completion=False,
)


def configure_logging(json_logs: bool = False) -> None:
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ]
    )


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """
    Start relaying purchase events into payouts.
    """
    configure_logging(json_logs)

    try:
        config = RelayerConfig.from_env(config_path)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)

    from .relayer import PurchaseRelayer

    async def _run() -> None:
        relayer = PurchaseRelayer(config)
        try:
            await relayer.run()
        finally:
            await relayer.close()

    typer.echo("Relaying purchases. Press Ctrl+C to stop.")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("\nStopping relayer...")


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
) -> None:
    """
    Show recorded outcomes, the source checkpoint and in-flight payouts.
    """
    from .store import RelayStore

    settings = Settings(_env_file=config_path) if config_path else Settings()
    store = RelayStore(settings.database_url)
    try:
        counts = store.count_by_status()
        typer.echo(f"Checkpoint: {store.get_checkpoint()}")
        if not counts:
            typer.echo("No relays recorded.")
        for name, count in sorted(counts.items()):
            typer.echo(f"  {name}: {count}")

        for row in store.get_in_flight():
            typer.echo(
                f"  in flight: {row.event.source_tx_hash}:{row.event.log_index} "
                f"-> {row.destination_tx_hash}"
            )
    finally:
        store.close()


@app.command("serve-log")
def serve_log(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
) -> None:
    """
    Serve the relay log over HTTP (GET /tx-log).
    """
    configure_logging(json_logs=True)
    from .api import run as run_api

    run_api(host=host, port=port)


@app.command()
def version() -> None:
    """Show the relayer version."""
    from purchase_relayer import __version__
    typer.echo(f"purchase-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
