import pytest

from immuvoting import config
from immuvoting.checkpoint import MemoryCheckpointCache
from immuvoting.client import LedgerClient
from immuvoting.store.base import LedgerStore
from immuvoting.store.sqlite import SQLiteLedgerStore
from immuvoting.verified import VerifiedReadEngine
from immuvoting.voting import VotingWorkflow


class ProxyStore(LedgerStore):
    """Delegates to a real store; tests override single methods to inject faults."""

    def __init__(self, inner: LedgerStore):
        self.inner = inner
        self.connects = 0

    async def connect(self):
        self.connects += 1
        await self.inner.connect()

    async def close(self):
        await self.inner.close()

    async def identity(self):
        return await self.inner.identity()

    async def get(self, key, at_tx=0):
        return await self.inner.get(key, at_tx)

    async def scan(self, prefix, limit, seek_key=None, desc=False):
        return await self.inner.scan(prefix, limit, seek_key, desc)

    async def history(self, key, offset=0, limit=1000, desc=False):
        return await self.inner.history(key, offset, limit, desc)

    async def atomic_batch(self, ops):
        return await self.inner.atomic_batch(ops)

    async def current_checkpoint(self):
        return await self.inner.current_checkpoint()

    async def verifiable_get(self, key, prove_since_tx):
        return await self.inner.verifiable_get(key, prove_since_tx)

    async def verifiable_tx(self, tx, prove_since_tx):
        return await self.inner.verifiable_tx(tx, prove_since_tx)


@pytest.fixture(autouse=True)
def reset_config():
    """Reset config from environment between every test."""
    config.reload()
    yield
    config.reload()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "ledger.db")


@pytest.fixture
async def store(db_path):
    s = SQLiteLedgerStore(db_path)
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def client(store):
    return LedgerClient(store, timeout=5.0)


@pytest.fixture
def cache():
    return MemoryCheckpointCache()


@pytest.fixture
def engine(client, cache):
    return VerifiedReadEngine(client, cache)


@pytest.fixture
def workflow(client, engine):
    return VotingWorkflow(client, engine=engine, candidates=(1, 2), scan_page_size=2)


@pytest.fixture
def proxy_store_cls():
    return ProxyStore
