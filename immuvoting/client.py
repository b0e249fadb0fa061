"""
ImmuVoting - Ledger Client.

Explicit store handle threaded through every operation. Bounds each
store call with a timeout, re-establishes an expired session exactly
once, and normalizes low-level failures into the error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Awaitable, Callable, Optional, TypeVar

from immuvoting.checkpoint import Checkpoint
from immuvoting.exceptions import SessionExpiredError, StoreError, StoreTimeoutError
from immuvoting.proofs import VerifiableTx
from immuvoting.store.base import Entry, LedgerStore, VerifiableEntry, WriteOp

logger = logging.getLogger("immuvoting.client")

T = TypeVar("T")

DEFAULT_TIMEOUT = 5.0


class LedgerClient:
    """Timeout- and reconnect-aware wrapper around a LedgerStore.

    Args:
        store: The ledger backend.
        timeout: Per-call deadline in seconds (None disables it).
    """

    def __init__(self, store: LedgerStore, timeout: Optional[float] = DEFAULT_TIMEOUT):
        self.store = store
        self.timeout = timeout

    async def connect(self) -> None:
        await self._bounded("connect", self.store.connect)

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> LedgerClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _bounded(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"ledger {op} timed out after {self.timeout}s") from e
        except sqlite3.Error as e:
            raise StoreError(f"ledger {op} failed: {e}") from e

    async def _execute(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn``; on session expiry reconnect and retry exactly once."""
        try:
            return await self._bounded(op, fn)
        except SessionExpiredError as e:
            logger.warning("got error '%s' during %s => reconnecting to ledger ...", e, op)
            await self._bounded("reconnect", self.store.connect)
            logger.info("successfully reconnected to ledger")
            return await self._bounded(op, fn)

    # ─── Operations ──────────────────────────────────────────────────

    async def identity(self) -> str:
        return await self._execute("identity", self.store.identity)

    async def get(self, key: bytes, at_tx: int = 0) -> Entry:
        return await self._execute("get", lambda: self.store.get(key, at_tx))

    async def scan(
        self,
        prefix: bytes,
        limit: int,
        seek_key: Optional[bytes] = None,
        desc: bool = False,
    ) -> list[Entry]:
        return await self._execute("scan", lambda: self.store.scan(prefix, limit, seek_key, desc))

    async def scan_all(self, prefix: bytes, page_size: int) -> list[Entry]:
        """Every latest entry under ``prefix``, fetched page by page."""
        entries: list[Entry] = []
        seek_key = None
        while True:
            page = await self.scan(prefix, page_size, seek_key=seek_key)
            entries.extend(page)
            if len(page) < page_size:
                return entries
            seek_key = page[-1].referenced_by.key if page[-1].referenced_by else page[-1].key

    async def history(
        self, key: bytes, offset: int = 0, limit: int = 1000, desc: bool = False
    ) -> list[Entry]:
        return await self._execute("history", lambda: self.store.history(key, offset, limit, desc))

    async def atomic_batch(self, ops: list[WriteOp]) -> int:
        return await self._execute("atomic batch", lambda: self.store.atomic_batch(ops))

    async def current_checkpoint(self) -> Checkpoint:
        return await self._execute("current checkpoint", self.store.current_checkpoint)

    async def verifiable_get(self, key: bytes, prove_since_tx: int) -> VerifiableEntry:
        return await self._execute(
            "verifiable get", lambda: self.store.verifiable_get(key, prove_since_tx)
        )

    async def verifiable_tx(self, tx: int, prove_since_tx: int) -> VerifiableTx:
        return await self._execute(
            "verifiable tx", lambda: self.store.verifiable_tx(tx, prove_since_tx)
        )
