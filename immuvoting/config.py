"""
ImmuVoting - Configuration.
Shared settings and paths for the entire codebase.
"""

import os
from pathlib import Path

# Base Paths
IMMUVOTING_DIR = Path.home() / ".immuvoting"
DEFAULT_DB_PATH = IMMUVOTING_DIR / "ledger.db"
DEFAULT_STATE_DIR = IMMUVOTING_DIR / "state"

# Key namespaces. Stable on-disk naming; changing them needs a migration.
VOTER_PREFIX = "immuvoting:voter:"
CITIZEN_PREFIX = "immuvoting:citizen:"
BALLOT_PREFIX = "immuvoting:ballot:"


def _load() -> None:
    global DB_PATH, STATE_DIR, STORE_TIMEOUT, SCAN_PAGE_SIZE, CANDIDATES
    global VERIFIED_READS, ADMIN_USER, ADMIN_PASSWORD, ALLOWED_ORIGINS
    global SIGNING_KEY, PUBLIC_KEY, HOST, PORT, LOG_LEVEL

    # Ledger
    DB_PATH = os.environ.get("IMMUVOTING_DB", str(DEFAULT_DB_PATH))
    # Empty string keeps the trusted checkpoint in memory only
    STATE_DIR = os.environ.get("IMMUVOTING_STATE_DIR", str(DEFAULT_STATE_DIR))
    STORE_TIMEOUT = float(os.environ.get("IMMUVOTING_STORE_TIMEOUT", "5.0"))
    SCAN_PAGE_SIZE = int(os.environ.get("IMMUVOTING_SCAN_PAGE_SIZE", "1000"))

    # Election
    CANDIDATES = tuple(
        int(c) for c in os.environ.get("IMMUVOTING_CANDIDATES", "1,2").split(",") if c.strip()
    )
    VERIFIED_READS = os.environ.get("IMMUVOTING_VERIFIED_READS", "0").lower() in ("1", "true", "yes")

    # Security
    ADMIN_USER = os.environ.get("IMMUVOTING_ADMIN_USER", "admin")
    ADMIN_PASSWORD = os.environ.get("IMMUVOTING_ADMIN_PASSWORD", "admin")
    ALLOWED_ORIGINS = os.environ.get(
        "IMMUVOTING_ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:8080"
    ).split(",")

    # ─── Checkpoint Signing ──────────────────────────────────────────
    # Hex-encoded Ed25519 private seed (server) / public key (clients).
    SIGNING_KEY = os.environ.get("IMMUVOTING_SIGNING_KEY", "")
    PUBLIC_KEY = os.environ.get("IMMUVOTING_PUBLIC_KEY", "")

    # Server
    HOST = os.environ.get("IMMUVOTING_HOST", "localhost")
    PORT = int(os.environ.get("IMMUVOTING_PORT", "8080"))
    LOG_LEVEL = os.environ.get("IMMUVOTING_LOG_LEVEL", "INFO").upper()


def reload() -> None:
    """Re-read every setting from the environment."""
    _load()


_load()
