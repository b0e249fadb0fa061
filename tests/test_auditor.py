"""
Tests for the client-side consistency auditor.

The server side is an in-process httpx transport answering /state and
/verifiable-tx straight from a ledger store.
"""

from typing import Optional

import httpx
import pytest

from immuvoting.auditor import ConsistencyAuditor
from immuvoting.checkpoint import Checkpoint, MemoryCheckpointCache
from immuvoting.exceptions import CorruptedDataError, NotFoundError, TransientStoreError
from immuvoting.proofs import verifiable_tx_to_dict
from immuvoting.signing import CheckpointSigner
from immuvoting.store.base import KVWrite
from immuvoting.store.sqlite import SQLiteLedgerStore

SERVER = "http://voting.test"


class LedgerTransport(httpx.AsyncBaseTransport):
    def __init__(self, store):
        self.store = store
        self.requests: list[httpx.Request] = []
        self.pinned_state: Optional[Checkpoint] = None
        self.status_override: Optional[int] = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"detail": "down"}, request=request)

        if request.url.path == "/state":
            state = self.pinned_state or await self.store.current_checkpoint()
            return httpx.Response(200, json=state.to_dict(), request=request)

        if request.url.path == "/verifiable-tx":
            params = request.url.params
            try:
                vtx = await self.store.verifiable_tx(
                    int(params["server_tx"]), int(params["local_tx"])
                )
            except NotFoundError as e:
                return httpx.Response(404, json={"detail": str(e)}, request=request)
            return httpx.Response(200, json=verifiable_tx_to_dict(vtx), request=request)

        return httpx.Response(404, json={"detail": "no route"}, request=request)


@pytest.fixture
def transport(store):
    return LedgerTransport(store)


async def _write(store, n):
    for _ in range(n):
        await store.atomic_batch([KVWrite(b"k", b"v")])


async def _audit(transport, cache, **kwargs):
    async with ConsistencyAuditor(SERVER, cache, transport=transport, **kwargs) as auditor:
        return await auditor.audit()


async def _trusted(cache):
    async with cache.lock():
        return await cache.load()


@pytest.mark.asyncio
async def test_first_run_trusts_server(store, transport, cache):
    await _write(store, 2)

    report = await _audit(transport, cache)

    assert report.tamper_free and report.first_run
    assert (await _trusted(cache)).tx_id == 2
    assert [r.url.path for r in transport.requests] == ["/state"]


@pytest.mark.asyncio
async def test_advances_and_holds(store, transport, cache):
    await _write(store, 2)
    await _audit(transport, cache)
    await _write(store, 3)

    report = await _audit(transport, cache)
    assert report.tamper_free and report.advanced
    assert report.local.tx_id == 2 and report.server.tx_id == 5
    assert (await _trusted(cache)).tx_id == 5
    assert transport.requests[-1].url.params["local_tx"] == "2"

    report = await _audit(transport, cache)
    assert report.tamper_free and not report.advanced


@pytest.mark.asyncio
async def test_empty_ledger_then_growth(store, transport, cache):
    await _audit(transport, cache)
    report = await _audit(transport, cache)
    assert report.tamper_free and not report.advanced

    await _write(store, 2)
    report = await _audit(transport, cache)
    assert report.advanced
    assert (await _trusted(cache)).tx_id == 2


@pytest.mark.asyncio
async def test_server_behind_never_downgrades(store, transport, cache):
    await _write(store, 2)
    older = await store.current_checkpoint()
    await _write(store, 1)
    await _audit(transport, cache)

    transport.pinned_state = older
    report = await _audit(transport, cache)

    assert report.tamper_free and not report.advanced
    assert (await _trusted(cache)).tx_id == 3


@pytest.mark.asyncio
async def test_rollback_to_empty_ledger_detected(store, transport, cache):
    await _write(store, 2)
    await _audit(transport, cache)
    before = await _trusted(cache)

    transport.pinned_state = Checkpoint.genesis()
    with pytest.raises(CorruptedDataError, match="rolled back"):
        await _audit(transport, cache)
    assert await _trusted(cache) == before

    async with ConsistencyAuditor(SERVER, cache, transport=transport) as auditor:
        assert await auditor.verdict() is False


@pytest.mark.asyncio
async def test_forked_history_detected(store, transport, cache, tmp_path):
    await _write(store, 2)
    await _audit(transport, cache)
    before = await _trusted(cache)

    forged = SQLiteLedgerStore(str(tmp_path / "forged.db"))
    await forged.connect()
    try:
        for value in (b"x", b"y", b"z"):
            await forged.atomic_batch([KVWrite(b"k", value)])
        transport.store = forged

        with pytest.raises(CorruptedDataError):
            await _audit(transport, cache)
        assert await _trusted(cache) == before

        async with ConsistencyAuditor(SERVER, cache, transport=transport) as auditor:
            assert await auditor.verdict() is False
    finally:
        await forged.close()


@pytest.mark.asyncio
async def test_unknown_local_tx_is_not_found(store, transport):
    await _write(store, 2)
    cache = MemoryCheckpointCache(Checkpoint(9, b"\x07" * 32))

    with pytest.raises(NotFoundError, match="one of the 2 tx IDs was not found"):
        await _audit(transport, cache)


@pytest.mark.asyncio
async def test_server_error_is_transient(store, transport, cache):
    transport.status_override = 500
    with pytest.raises(TransientStoreError):
        await _audit(transport, cache)
    assert await _trusted(cache) is None


@pytest.mark.asyncio
async def test_unsigned_state_rejected_when_key_pinned(store, transport, cache):
    await _write(store, 1)
    pinned = CheckpointSigner.generate().public_key()
    with pytest.raises(CorruptedDataError):
        await _audit(transport, cache, public_key=pinned)
    assert await _trusted(cache) is None


@pytest.mark.asyncio
async def test_signed_state_accepted(db_path):
    signer = CheckpointSigner.generate()
    store = SQLiteLedgerStore(db_path, signer=signer)
    await store.connect()
    try:
        await _write(store, 2)
        cache = MemoryCheckpointCache()
        report = await _audit(LedgerTransport(store), cache, public_key=signer.public_key())
        assert report.tamper_free
        assert (await _trusted(cache)).signature is not None
    finally:
        await store.close()
