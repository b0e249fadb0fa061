"""
Tests for the SQLite authenticated ledger store.
"""

import pytest

from immuvoting.checkpoint import Checkpoint
from immuvoting.exceptions import (
    KeyNotFound,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
    WriteConflict,
)
from immuvoting.merkle import verify_inclusion
from immuvoting.proofs import ZERO_DIGEST, encode_kv, encode_reference, leaf_digest, verify_dual_proof
from immuvoting.signing import CheckpointSigner, verify_checkpoint_signature
from immuvoting.store.base import KVWrite, ReferenceWrite
from immuvoting.store.sqlite import SQLiteLedgerStore


@pytest.mark.asyncio
async def test_batches_get_consecutive_tx_ids(store):
    assert await store.atomic_batch([KVWrite(b"a", b"1")]) == 1
    assert await store.atomic_batch([KVWrite(b"b", b"2"), KVWrite(b"c", b"3")]) == 2


@pytest.mark.asyncio
async def test_get_latest_and_as_of(store):
    await store.atomic_batch([KVWrite(b"k", b"v1")])
    await store.atomic_batch([KVWrite(b"k", b"v2")])

    latest = await store.get(b"k")
    assert (latest.value, latest.tx) == (b"v2", 2)
    assert (await store.get(b"k", at_tx=1)).value == b"v1"


@pytest.mark.asyncio
async def test_get_missing_key(store):
    with pytest.raises(KeyNotFound):
        await store.get(b"nope")


@pytest.mark.asyncio
async def test_reference_resolves_to_target(store):
    await store.atomic_batch([KVWrite(b"voter:1", b"data"), ReferenceWrite(b"citizen:C1", b"voter:1")])
    await store.atomic_batch([KVWrite(b"voter:1", b"data-v2")])

    entry = await store.get(b"citizen:C1")
    assert entry.key == b"voter:1"
    assert entry.value == b"data-v2"
    assert entry.tx == 2
    assert entry.referenced_by.key == b"citizen:C1"
    assert entry.referenced_by.tx == 1


@pytest.mark.asyncio
async def test_reference_to_missing_key_rejected(store):
    with pytest.raises(KeyNotFound):
        await store.atomic_batch([ReferenceWrite(b"alias", b"missing")])
    assert (await store.current_checkpoint()).tx_id == 0


@pytest.mark.asyncio
async def test_reference_to_reference_rejected(store):
    await store.atomic_batch([KVWrite(b"k", b"v"), ReferenceWrite(b"r1", b"k")])
    with pytest.raises(ValidationError):
        await store.atomic_batch([ReferenceWrite(b"r2", b"r1")])


@pytest.mark.asyncio
async def test_empty_and_duplicate_batches_rejected(store):
    with pytest.raises(ValidationError):
        await store.atomic_batch([])
    with pytest.raises(ValidationError):
        await store.atomic_batch([KVWrite(b"k", b"1"), KVWrite(b"k", b"2")])


class TestConditionalWrites:
    @pytest.mark.asyncio
    async def test_absent_condition(self, store):
        await store.atomic_batch([KVWrite(b"k", b"v", expected_tx=0)])
        with pytest.raises(WriteConflict) as exc:
            await store.atomic_batch([KVWrite(b"k", b"other", expected_tx=0)])
        assert exc.value.key == b"k"
        assert exc.value.actual_tx == 1
        assert (await store.get(b"k")).value == b"v"

    @pytest.mark.asyncio
    async def test_version_condition(self, store):
        await store.atomic_batch([KVWrite(b"k", b"v1")])
        await store.atomic_batch([KVWrite(b"k", b"v2", expected_tx=1)])
        with pytest.raises(WriteConflict):
            await store.atomic_batch([KVWrite(b"k", b"v3", expected_tx=1)])
        assert (await store.get(b"k")).value == b"v2"

    @pytest.mark.asyncio
    async def test_conflict_applies_nothing(self, store):
        await store.atomic_batch([KVWrite(b"taken", b"x")])
        with pytest.raises(WriteConflict):
            await store.atomic_batch(
                [KVWrite(b"fresh", b"y"), ReferenceWrite(b"taken", b"fresh", expected_tx=0)]
            )
        with pytest.raises(KeyNotFound):
            await store.get(b"fresh")
        assert (await store.current_checkpoint()).tx_id == 1


class TestScanAndHistory:
    @pytest.mark.asyncio
    async def test_scan_prefix_latest_values(self, store):
        await store.atomic_batch([KVWrite(b"a:1", b"x"), KVWrite(b"a:2", b"y"), KVWrite(b"b:1", b"z")])
        await store.atomic_batch([KVWrite(b"a:1", b"x2")])

        entries = await store.scan(b"a:", limit=10)
        assert [(e.key, e.value) for e in entries] == [(b"a:1", b"x2"), (b"a:2", b"y")]

    @pytest.mark.asyncio
    async def test_scan_seek_and_desc(self, store):
        await store.atomic_batch([KVWrite(f"p:{i}".encode(), b"v") for i in range(5)])

        page = await store.scan(b"p:", limit=2, seek_key=b"p:1")
        assert [e.key for e in page] == [b"p:2", b"p:3"]
        page = await store.scan(b"p:", limit=2, desc=True)
        assert [e.key for e in page] == [b"p:4", b"p:3"]

    @pytest.mark.asyncio
    async def test_scan_rejects_non_positive_limit(self, store):
        with pytest.raises(ValidationError):
            await store.scan(b"", limit=0)

    @pytest.mark.asyncio
    async def test_history(self, store):
        for v in (b"0", b"1", b"2"):
            await store.atomic_batch([KVWrite(b"k", v)])
        assert [e.value for e in await store.history(b"k")] == [b"0", b"1", b"2"]
        assert [e.value for e in await store.history(b"k", desc=True, limit=2)] == [b"2", b"1"]
        with pytest.raises(KeyNotFound):
            await store.history(b"missing")


class TestProofs:
    @pytest.mark.asyncio
    async def test_empty_ledger_is_genesis(self, store):
        assert await store.current_checkpoint() == Checkpoint.genesis()

    @pytest.mark.asyncio
    async def test_verifiable_get_direct(self, store):
        await store.atomic_batch([KVWrite(b"a", b"1"), KVWrite(b"b", b"2"), KVWrite(b"c", b"3")])
        head = await store.current_checkpoint()

        vget = await store.verifiable_get(b"b", prove_since_tx=0)
        md = vget.verifiable_tx.dual_proof.target_tx_metadata
        assert verify_inclusion(vget.inclusion_proof, leaf_digest(encode_kv(b"b", b"2")), md.eh)
        assert verify_dual_proof(vget.verifiable_tx.dual_proof, 0, 1, ZERO_DIGEST, head.tx_hash)

    @pytest.mark.asyncio
    async def test_verifiable_get_reference_proves_alias_row(self, store):
        await store.atomic_batch([KVWrite(b"v", b"data")])
        await store.atomic_batch([ReferenceWrite(b"alias", b"v")])

        vget = await store.verifiable_get(b"alias", prove_since_tx=0)
        md = vget.verifiable_tx.dual_proof.target_tx_metadata
        assert md.id == 2
        assert verify_inclusion(
            vget.inclusion_proof, leaf_digest(encode_reference(b"alias", b"v", 0)), md.eh
        )

    @pytest.mark.asyncio
    async def test_verifiable_tx_between_checkpoints(self, store):
        for i in range(4):
            await store.atomic_batch([KVWrite(b"k", str(i).encode())])
        vtx = await store.verifiable_tx(4, prove_since_tx=2)
        source = vtx.dual_proof.source_tx_metadata
        assert verify_dual_proof(vtx.dual_proof, 2, 4, source.alh(), (await store.current_checkpoint()).tx_hash)

    @pytest.mark.asyncio
    async def test_verifiable_tx_unknown(self, store):
        await store.atomic_batch([KVWrite(b"k", b"v")])
        with pytest.raises(NotFoundError):
            await store.verifiable_tx(9, prove_since_tx=1)


class TestSession:
    @pytest.mark.asyncio
    async def test_identity_survives_reconnect(self, db_path):
        store = SQLiteLedgerStore(db_path)
        await store.connect()
        first = await store.identity()
        await store.close()
        await store.connect()
        try:
            assert await store.identity() == first
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_closed_store_reports_expired_session(self, db_path):
        store = SQLiteLedgerStore(db_path)
        await store.connect()
        await store.close()
        with pytest.raises(SessionExpiredError):
            await store.get(b"k")

    @pytest.mark.asyncio
    async def test_signed_checkpoint(self, db_path):
        signer = CheckpointSigner.generate()
        store = SQLiteLedgerStore(db_path, signer=signer)
        await store.connect()
        try:
            await store.atomic_batch([KVWrite(b"k", b"v")])
            head = await store.current_checkpoint()
            assert verify_checkpoint_signature(signer.public_key(), head.tx_id, head.tx_hash, head.signature)
        finally:
            await store.close()
