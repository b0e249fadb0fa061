"""
ImmuVoting CLI - Package init.

Re-exports the main CLI group and shared utilities.
"""

from __future__ import annotations

import logging

import click
from rich.console import Console

from immuvoting import __version__, config
from immuvoting.client import LedgerClient
from immuvoting.signing import CheckpointSigner
from immuvoting.store.sqlite import SQLiteLedgerStore

console = Console()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def get_client(db: str) -> LedgerClient:
    """Create a ledger client for a local database (not yet connected)."""
    signer = CheckpointSigner.from_hex(config.SIGNING_KEY) if config.SIGNING_KEY else None
    return LedgerClient(SQLiteLedgerStore(db, signer=signer), timeout=config.STORE_TIMEOUT)


# ─── Main Group ──────────────────────────────────────────────────

@click.group()
@click.version_option(__version__, prog_name="immuvoting")
@click.option("--log-level", default=None, help="Logging level (default: IMMUVOTING_LOG_LEVEL)")
def cli(log_level) -> None:
    """ImmuVoting - elections anyone can verify."""
    setup_logging(log_level or config.LOG_LEVEL)


# ─── Register all sub-modules ───────────────────────────────────
from immuvoting.cli import server_cmds  # noqa: E402, F401
from immuvoting.cli import audit_cmds  # noqa: E402, F401
from immuvoting.cli import election_cmds  # noqa: E402, F401


if __name__ == "__main__":
    cli()
