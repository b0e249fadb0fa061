"""CLI commands against a local ledger: register, approve, tally, state."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from immuvoting import config
from immuvoting.cli import cli, console, get_client
from immuvoting.exceptions import ImmuVotingError, ValidationError
from immuvoting.proofs import b64
from immuvoting.voting import VotingWorkflow


def _run(fn):
    """Open the ledger, run ``fn(client)``, always close."""

    async def _inner(db):
        client = get_client(db)
        await client.connect()
        try:
            return await fn(client)
        finally:
            await client.close()

    return _inner


def _fail(e: ImmuVotingError) -> None:
    if isinstance(e, ValidationError):
        for violation in e.violations:
            console.print(f"[red]✗ {escape(violation)}[/]")
    else:
        console.print(f"[red]✗ {escape(str(e))}[/]")
    sys.exit(1)


@cli.command()
@click.argument("citizen_id")
@click.argument("name")
@click.argument("address")
@click.argument("email")
@click.option("--db", default=None, help="Ledger database path (default: IMMUVOTING_DB)")
def register(citizen_id, name, address, email, db) -> None:
    """Register a voter and issue their ballot."""

    async def _register(client):
        return await VotingWorkflow(client).register_voter(citizen_id, name, address, email)

    try:
        result = asyncio.run(_run(_register)(db or config.DB_PATH))
    except ImmuVotingError as e:
        _fail(e)
        return
    console.print(
        f"[green]✓[/] Registered [bold]{citizen_id}[/]\n"
        f"   voter:  {result.voter_id}\n"
        f"   ballot: {result.ballot_id}"
    )


@cli.command()
@click.argument("voter_id")
@click.option("--db", default=None, help="Ledger database path (default: IMMUVOTING_DB)")
def approve(voter_id, db) -> None:
    """Approve a voter registration (voter ID or citizen ID)."""

    async def _approve(client):
        return await VotingWorkflow(client).approve_voter(voter_id)

    try:
        voter = asyncio.run(_run(_approve)(db or config.DB_PATH))
    except ImmuVotingError as e:
        _fail(e)
        return
    console.print(f"[green]✓[/] Approved [bold]{voter.name}[/] at {voter.approved_at}")


@cli.command()
@click.option("--db", default=None, help="Ledger database path (default: IMMUVOTING_DB)")
def tally(db) -> None:
    """Count registrations, votes and per-candidate results."""

    async def _tally(client):
        return await VotingWorkflow(client).tally()

    try:
        result = asyncio.run(_run(_tally)(db or config.DB_PATH))
    except ImmuVotingError as e:
        _fail(e)
        return

    table = Table(title="🗳  Results")
    table.add_column("Candidate", style="bold cyan", justify="right")
    table.add_column("Votes", justify="right")
    for candidate, count in sorted(result.results.items()):
        table.add_row(str(candidate), str(count))
    console.print(table)
    console.print(
        f"[bold]Registered:[/] {result.registered}  "
        f"[bold]Voted:[/] {result.voted}  "
        f"[bold]Ballots cast:[/] {result.ballots}"
    )


@cli.command()
@click.option("--db", default=None, help="Ledger database path (default: IMMUVOTING_DB)")
def state(db) -> None:
    """Show the local ledger's current head."""

    async def _state(client):
        return await client.identity(), await client.current_checkpoint()

    try:
        identity, checkpoint = asyncio.run(_run(_state)(db or config.DB_PATH))
    except ImmuVotingError as e:
        _fail(e)
        return
    console.print(
        Panel(
            f"[bold cyan]Ledger:[/] {identity}\n"
            f"[bold cyan]Tx:[/] {checkpoint.tx_id}\n"
            f"[bold cyan]Hash:[/] {b64(checkpoint.tx_hash)}\n"
            f"[bold cyan]Signed:[/] {'yes' if checkpoint.signature else 'no'}",
            title="📊 Ledger State",
            border_style="cyan",
        )
    )
