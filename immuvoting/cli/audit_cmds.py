"""CLI commands: audit, remote-state."""

from __future__ import annotations

import asyncio
import re
import sys
from urllib.parse import urlsplit

import click
from rich.markup import escape
from rich.panel import Panel

from immuvoting import config
from immuvoting.auditor import ConsistencyAuditor
from immuvoting.checkpoint import FileCheckpointCache
from immuvoting.cli import cli, console
from immuvoting.exceptions import CorruptedDataError, NotFoundError, TransientStoreError
from immuvoting.proofs import b64
from immuvoting.signing import load_public_key

DEFAULT_AUDIT_DIR = str(config.IMMUVOTING_DIR / "audit")


def server_identity(server_url: str) -> str:
    """Filesystem-safe cache identity for a server URL."""
    parts = urlsplit(server_url)
    return re.sub(r"[^A-Za-z0-9_.-]", "_", parts.netloc or parts.path) or "default"


@cli.command()
@click.option("--server", default="http://localhost:8080", help="Voting server base URL")
@click.option("--state-dir", default=DEFAULT_AUDIT_DIR, help="Where the trusted checkpoint is kept")
@click.option("--identity", default=None, help="Checkpoint slot name (default: derived from --server)")
@click.option("--public-key", default=None, help="Hex Ed25519 key the server signs with")
@click.option("--timeout", type=float, default=5.0, help="HTTP timeout in seconds")
def audit(server, state_dir, identity, public_key, timeout) -> None:
    """Check that the server's ledger only grew since the last audit."""
    key_hex = public_key or config.PUBLIC_KEY
    pub = load_public_key(key_hex) if key_hex else None
    cache = FileCheckpointCache(state_dir, identity or server_identity(server))

    async def _audit_async():
        async with ConsistencyAuditor(server, cache, timeout=timeout, public_key=pub) as auditor:
            return await auditor.audit()

    try:
        with console.status(f"[bold yellow]Auditing {server}...[/]"):
            report = asyncio.run(_audit_async())
    except CorruptedDataError as e:
        console.print(
            Panel(
                f"[bold red]TAMPERED[/]\n{escape(str(e))}\n\n"
                "[dim]Local checkpoint left untouched. Stop trusting this server.[/]",
                title="🚨 Consistency Audit",
                border_style="red",
            )
        )
        sys.exit(1)
    except (NotFoundError, TransientStoreError) as e:
        console.print(f"[yellow]⚠ Audit could not complete:[/] {escape(str(e))}")
        sys.exit(2)

    if report.first_run:
        body = f"First audit: trusting server state at tx [bold]{report.server.tx_id}[/]"
    elif report.advanced:
        body = f"Advanced from tx [bold]{report.local.tx_id}[/] to tx [bold]{report.server.tx_id}[/]"
    else:
        body = f"Server still at tx [bold]{report.server.tx_id}[/]"
    console.print(
        Panel(
            f"[bold green]✓ Tamper-free[/]\n{body}\n"
            f"[dim]Hash: {b64(report.server.tx_hash)}[/]\n"
            f"[dim]Checked at: {report.checked_at}[/]",
            title="🔍 Consistency Audit",
            border_style="green",
        )
    )


@cli.command("remote-state")
@click.option("--server", default="http://localhost:8080", help="Voting server base URL")
@click.option("--timeout", type=float, default=5.0, help="HTTP timeout in seconds")
def remote_state(server, timeout) -> None:
    """Show the state a server currently publishes (unverified)."""

    async def _state_async():
        async with ConsistencyAuditor(server, cache=None, timeout=timeout) as auditor:
            return await auditor.fetch_state()

    try:
        state = asyncio.run(_state_async())
    except (NotFoundError, TransientStoreError, CorruptedDataError) as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        sys.exit(2)
    console.print(
        f"[bold cyan]tx:[/] {state.tx_id}\n"
        f"[bold cyan]hash:[/] {b64(state.tx_hash)}\n"
        f"[bold cyan]signed:[/] {'yes' if state.signature else 'no'}"
    )
