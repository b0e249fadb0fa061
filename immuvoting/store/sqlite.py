"""
ImmuVoting - SQLite Authenticated Ledger.

Reference LedgerStore: an append-only key-value log on aiosqlite where
every transaction commits a Merkle root over its entries (``eh``) and
an accumulated linear hash (``alh``) chaining it to all prior
transactions. Serves inclusion proofs for single entries and linear
dual proofs between any two transactions.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from typing import Optional

import aiosqlite

from immuvoting.checkpoint import Checkpoint
from immuvoting.exceptions import (
    KeyNotFound,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
    WriteConflict,
)
from immuvoting.merkle import MerkleTree
from immuvoting.proofs import (
    ZERO_DIGEST,
    DualProof,
    LinearProof,
    TxMetadata,
    VerifiableTx,
    encode_kv,
    encode_reference,
    leaf_digest,
)
from immuvoting.signing import CheckpointSigner
from immuvoting.store.base import (
    Entry,
    KVWrite,
    LedgerStore,
    Reference,
    ReferenceWrite,
    VerifiableEntry,
    WriteOp,
)

logger = logging.getLogger("immuvoting.store")

LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_meta (
    name        TEXT PRIMARY KEY,
    value       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_txs (
    id          INTEGER PRIMARY KEY,
    ts          INTEGER NOT NULL,
    nentries    INTEGER NOT NULL,
    prev_alh    BLOB NOT NULL,
    eh          BLOB NOT NULL,
    alh         BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    tx_id       INTEGER NOT NULL REFERENCES ledger_txs(id),
    idx         INTEGER NOT NULL,
    key         BLOB NOT NULL,
    value       BLOB,
    ref_key     BLOB,
    ref_at_tx   INTEGER,
    PRIMARY KEY (tx_id, idx)
);

CREATE INDEX IF NOT EXISTS idx_ledger_entries_key ON ledger_entries(key, tx_id);
"""

_ENTRY_COLUMNS = "key, tx_id, idx, value, ref_key, ref_at_tx"
_SCAN_COLUMNS = "e.key, e.tx_id, e.idx, e.value, e.ref_key, e.ref_at_tx"


def _encode_row(key: bytes, value: Optional[bytes], ref_key: Optional[bytes], ref_at_tx: Optional[int]):
    if ref_key is None:
        return encode_kv(key, value)
    return encode_reference(key, ref_key, ref_at_tx or 0)


def _encode_op(op: WriteOp):
    if isinstance(op, ReferenceWrite):
        return encode_reference(op.key, op.referenced_key, op.at_tx)
    return encode_kv(op.key, op.value)


class SQLiteLedgerStore(LedgerStore):
    """
    Authenticated append-only ledger on a single aiosqlite connection.

    All operations are serialized by an asyncio lock so a batch and a
    proof never observe each other half-done.
    """

    def __init__(self, db_path: str, signer: Optional[CheckpointSigner] = None):
        self.db_path = db_path
        self.signer = signer
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._identity: Optional[str] = None

    # ─── Session ─────────────────────────────────────────────────────

    async def connect(self) -> None:
        async with self._lock:
            if self._db is not None:
                await self._db.close()
                self._db = None

            conn = await aiosqlite.connect(self.db_path)
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA synchronous=NORMAL;")
                await conn.execute("PRAGMA foreign_keys=ON;")
                await conn.execute("PRAGMA busy_timeout=5000;")
                await conn.executescript(LEDGER_SCHEMA)
                await conn.execute(
                    "INSERT OR IGNORE INTO ledger_meta (name, value) VALUES ('uuid', ?)",
                    (str(uuid.uuid4()),),
                )
                await conn.commit()
                async with conn.execute(
                    "SELECT value FROM ledger_meta WHERE name = 'uuid'"
                ) as cursor:
                    self._identity = (await cursor.fetchone())[0]
            except sqlite3.Error:
                await conn.close()
                raise

            self._db = conn
            logger.info("Ledger %s opened at %s", self._identity, self.db_path)

    async def close(self) -> None:
        async with self._lock:
            if self._db is not None:
                await self._db.close()
                self._db = None

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise SessionExpiredError(f"ledger session on {self.db_path} is not open")
        return self._db

    async def identity(self) -> str:
        if self._identity is None:
            raise SessionExpiredError(f"ledger session on {self.db_path} was never opened")
        return self._identity

    # ─── Reads ───────────────────────────────────────────────────────

    async def _latest_row(self, db: aiosqlite.Connection, key: bytes, at_tx: int = 0):
        if at_tx:
            sql = (
                f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries "
                "WHERE key = ? AND tx_id <= ? ORDER BY tx_id DESC LIMIT 1"
            )
            params = (key, at_tx)
        else:
            sql = f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries WHERE key = ? ORDER BY tx_id DESC LIMIT 1"
            params = (key,)
        async with db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _resolve(self, db: aiosqlite.Connection, row) -> Entry:
        key, tx_id, _idx, value, ref_key, ref_at_tx = row
        if ref_key is None:
            return Entry(key=bytes(key), value=bytes(value), tx=tx_id)

        target = await self._latest_row(db, ref_key, ref_at_tx or 0)
        if target is None:
            raise KeyNotFound(f"key {bytes(ref_key)!r} referenced by {bytes(key)!r} not found")
        return Entry(
            key=bytes(target[0]),
            value=bytes(target[3]),
            tx=target[1],
            referenced_by=Reference(key=bytes(key), tx=tx_id, at_tx=ref_at_tx or 0),
        )

    async def get(self, key: bytes, at_tx: int = 0) -> Entry:
        async with self._lock:
            db = self._conn
            row = await self._latest_row(db, key, at_tx)
            if row is None:
                raise KeyNotFound(f"key {key!r} not found")
            return await self._resolve(db, row)

    async def scan(
        self,
        prefix: bytes,
        limit: int,
        seek_key: Optional[bytes] = None,
        desc: bool = False,
    ) -> list[Entry]:
        if limit <= 0:
            raise ValidationError([f"scan limit must be positive, got {limit}"])

        conditions = ["e.tx_id = (SELECT MAX(tx_id) FROM ledger_entries WHERE key = e.key)"]
        params: list = []
        if prefix:
            conditions.append("substr(e.key, 1, ?) = ?")
            params.extend([len(prefix), prefix])
        if seek_key is not None:
            conditions.append("e.key < ?" if desc else "e.key > ?")
            params.append(seek_key)
        order = "DESC" if desc else "ASC"
        sql = (
            f"SELECT {_SCAN_COLUMNS} "
            f"FROM ledger_entries e WHERE {' AND '.join(conditions)} "
            f"ORDER BY e.key {order} LIMIT ?"
        )
        params.append(limit)

        async with self._lock:
            db = self._conn
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
            return [await self._resolve(db, row) for row in rows]

    async def history(
        self, key: bytes, offset: int = 0, limit: int = 1000, desc: bool = False
    ) -> list[Entry]:
        order = "DESC" if desc else "ASC"
        async with self._lock:
            db = self._conn
            async with db.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries WHERE key = ? "
                f"ORDER BY tx_id {order} LIMIT ? OFFSET ?",
                (key, limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
            if not rows and await self._latest_row(db, key) is None:
                raise KeyNotFound(f"key {key!r} not found")
            return [await self._resolve(db, row) for row in rows]

    # ─── Writes ──────────────────────────────────────────────────────

    async def atomic_batch(self, ops: list[WriteOp]) -> int:
        if not ops:
            raise ValidationError(["batch has no operations"])
        keys = [op.key for op in ops]
        if len(set(keys)) != len(keys):
            raise ValidationError(["batch writes the same key more than once"])

        async with self._lock:
            db = self._conn
            await db.execute("BEGIN IMMEDIATE")
            try:
                tx_id = await self._commit_batch(db, ops)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        logger.debug("Committed tx %d with %d entries", tx_id, len(ops))
        return tx_id

    async def _commit_batch(self, db: aiosqlite.Connection, ops: list[WriteOp]) -> int:
        batch = {op.key: op for op in ops}

        for op in ops:
            if op.expected_tx is None:
                continue
            row = await self._latest_row(db, op.key)
            actual = row[1] if row is not None else 0
            if actual != op.expected_tx:
                raise WriteConflict(op.key, op.expected_tx, actual)

        for op in ops:
            if not isinstance(op, ReferenceWrite):
                continue
            if op.referenced_key in batch:
                if not isinstance(batch[op.referenced_key], KVWrite) or op.at_tx:
                    raise ValidationError(
                        [f"reference {op.key!r} must point at a plain value written at the latest tx"]
                    )
                continue
            target = await self._latest_row(db, op.referenced_key, op.at_tx)
            if target is None:
                raise KeyNotFound(f"referenced key {op.referenced_key!r} not found")
            if target[4] is not None:
                raise ValidationError([f"reference {op.key!r} cannot point at another reference"])

        async with db.execute("SELECT id, alh FROM ledger_txs ORDER BY id DESC LIMIT 1") as cursor:
            last = await cursor.fetchone()
        prev_id, prev_alh = (last[0], bytes(last[1])) if last else (0, ZERO_DIGEST)

        tx_id = prev_id + 1
        tree = MerkleTree([leaf_digest(_encode_op(op)) for op in ops])
        md = TxMetadata(id=tx_id, prev_alh=prev_alh, ts=int(time.time()), nentries=len(ops), eh=tree.root)

        await db.execute(
            "INSERT INTO ledger_txs (id, ts, nentries, prev_alh, eh, alh) VALUES (?, ?, ?, ?, ?, ?)",
            (md.id, md.ts, md.nentries, md.prev_alh, md.eh, md.alh()),
        )
        await db.executemany(
            "INSERT INTO ledger_entries (tx_id, idx, key, value, ref_key, ref_at_tx) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (
                    tx_id,
                    idx,
                    op.key,
                    op.value if isinstance(op, KVWrite) else None,
                    op.referenced_key if isinstance(op, ReferenceWrite) else None,
                    op.at_tx if isinstance(op, ReferenceWrite) else None,
                )
                for idx, op in enumerate(ops)
            ],
        )
        return tx_id

    # ─── Proofs ──────────────────────────────────────────────────────

    async def _tx_metadata(self, db: aiosqlite.Connection, tx_id: int) -> TxMetadata:
        async with db.execute(
            "SELECT id, prev_alh, ts, nentries, eh FROM ledger_txs WHERE id = ?", (tx_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"tx {tx_id} not found")
        return TxMetadata(id=row[0], prev_alh=bytes(row[1]), ts=row[2], nentries=row[3], eh=bytes(row[4]))

    async def _dual_proof(self, db: aiosqlite.Connection, a: int, b: int) -> DualProof:
        source_id, target_id = min(a, b), max(a, b)
        source_md = await self._tx_metadata(db, source_id) if source_id else None
        target_md = await self._tx_metadata(db, target_id)

        terms = [source_md.alh() if source_md is not None else ZERO_DIGEST]
        async with db.execute(
            "SELECT id, prev_alh, ts, nentries, eh FROM ledger_txs WHERE id > ? AND id <= ? ORDER BY id",
            (source_id, target_id),
        ) as cursor:
            async for row in cursor:
                md = TxMetadata(id=row[0], prev_alh=bytes(row[1]), ts=row[2], nentries=row[3], eh=bytes(row[4]))
                terms.append(md.inner_hash())

        return DualProof(
            source_tx_metadata=source_md,
            target_tx_metadata=target_md,
            linear_proof=LinearProof(source_tx_id=source_id, target_tx_id=target_id, terms=terms),
        )

    async def _verifiable_tx(self, db: aiosqlite.Connection, tx: int, prove_since_tx: int) -> VerifiableTx:
        md = await self._tx_metadata(db, tx)
        dual = await self._dual_proof(db, tx, prove_since_tx)
        target = dual.target_tx_metadata
        signature = self.signer.sign(target.id, target.alh()) if self.signer else None
        return VerifiableTx(tx=md, dual_proof=dual, signature=signature)

    async def current_checkpoint(self) -> Checkpoint:
        async with self._lock:
            db = self._conn
            async with db.execute("SELECT id, alh FROM ledger_txs ORDER BY id DESC LIMIT 1") as cursor:
                row = await cursor.fetchone()
        checkpoint = Checkpoint(tx_id=row[0], tx_hash=bytes(row[1])) if row else Checkpoint.genesis()
        if self.signer:
            signature = self.signer.sign(checkpoint.tx_id, checkpoint.tx_hash)
            checkpoint = Checkpoint(checkpoint.tx_id, checkpoint.tx_hash, signature)
        return checkpoint

    async def verifiable_get(self, key: bytes, prove_since_tx: int) -> VerifiableEntry:
        async with self._lock:
            db = self._conn
            row = await self._latest_row(db, key)
            if row is None:
                raise KeyNotFound(f"key {key!r} not found")
            entry = await self._resolve(db, row)

            # The committed leaf is the row for ``key`` itself, alias or not.
            _key, tx_id, idx, _value, _ref_key, _ref_at_tx = row
            async with db.execute(
                "SELECT key, value, ref_key, ref_at_tx FROM ledger_entries WHERE tx_id = ? ORDER BY idx",
                (tx_id,),
            ) as cursor:
                leaves = [
                    leaf_digest(_encode_row(bytes(k), v and bytes(v), r and bytes(r), at))
                    for k, v, r, at in await cursor.fetchall()
                ]
            tree = MerkleTree(leaves)
            if tree.root != (await self._tx_metadata(db, tx_id)).eh:
                # Served as stored; verifiers reject it.
                logger.error("Entries of tx %d no longer match their committed root", tx_id)

            verifiable_tx = await self._verifiable_tx(db, tx_id, prove_since_tx)
            return VerifiableEntry(
                entry=entry,
                inclusion_proof=tree.get_proof(idx),
                verifiable_tx=verifiable_tx,
            )

    async def verifiable_tx(self, tx: int, prove_since_tx: int) -> VerifiableTx:
        async with self._lock:
            return await self._verifiable_tx(self._conn, tx, prove_since_tx)

