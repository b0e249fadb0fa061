"""CLI commands: serve, keygen."""

from __future__ import annotations

import click
import uvicorn
from rich.panel import Panel

from immuvoting import config
from immuvoting.cli import cli, console
from immuvoting.signing import CheckpointSigner


@cli.command()
@click.option("--host", default=None, help="Bind address (default: IMMUVOTING_HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: IMMUVOTING_PORT)")
@click.option("--db", default=None, help="Ledger database path (default: IMMUVOTING_DB)")
def serve(host, port, db) -> None:
    """Run the voting HTTP server."""
    if db:
        config.DB_PATH = db
    uvicorn.run(
        "immuvoting.api:app",
        host=host or config.HOST,
        port=port or config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


@cli.command()
def keygen() -> None:
    """Generate an Ed25519 key pair for signing checkpoints."""
    signer = CheckpointSigner.generate()
    console.print(
        Panel(
            f"[bold cyan]IMMUVOTING_SIGNING_KEY[/]={signer.seed_hex()}\n"
            f"[bold cyan]IMMUVOTING_PUBLIC_KEY[/]={signer.public_key_hex()}",
            title="🔑 Checkpoint keys",
            border_style="cyan",
        )
    )
    console.print("[dim]Keep the signing key on the server; hand the public key to auditors.[/]")
