"""ImmuVoting Store - abstract ledger interface and value types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

from immuvoting.checkpoint import Checkpoint
from immuvoting.merkle import InclusionProof
from immuvoting.proofs import VerifiableTx


@dataclass
class Reference:
    """The alias an entry was fetched through."""

    key: bytes
    tx: int
    at_tx: int = 0


@dataclass
class Entry:
    key: bytes
    value: bytes
    tx: int
    referenced_by: Optional[Reference] = None


@dataclass
class KVWrite:
    """Direct key/value write.

    ``expected_tx``: None writes unconditionally, 0 requires the key to be
    absent, n requires the key's latest write to be at tx n.
    """

    key: bytes
    value: bytes
    expected_tx: Optional[int] = None


@dataclass
class ReferenceWrite:
    """Alias write: ``key`` resolves to ``referenced_key`` (at ``at_tx``, 0 = latest)."""

    key: bytes
    referenced_key: bytes
    at_tx: int = 0
    expected_tx: Optional[int] = None


WriteOp = Union[KVWrite, ReferenceWrite]


@dataclass
class VerifiableEntry:
    entry: Entry
    inclusion_proof: InclusionProof
    verifiable_tx: VerifiableTx


class LedgerStore(ABC):
    """Append-only authenticated key-value ledger.

    Every method may block on I/O; callers bound them with timeouts.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open (or re-open) the session."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def identity(self) -> str:
        """Stable identifier of this ledger, used to key cached checkpoints."""

    @abstractmethod
    async def get(self, key: bytes, at_tx: int = 0) -> Entry:
        """Latest entry for ``key`` (as of ``at_tx`` when non-zero). Raises KeyNotFound."""

    @abstractmethod
    async def scan(
        self,
        prefix: bytes,
        limit: int,
        seek_key: Optional[bytes] = None,
        desc: bool = False,
    ) -> list[Entry]:
        """Latest entries of keys under ``prefix``, ordered by key, after ``seek_key``."""

    @abstractmethod
    async def history(
        self, key: bytes, offset: int = 0, limit: int = 1000, desc: bool = False
    ) -> list[Entry]:
        """Every value ever written to ``key``, oldest first unless ``desc``."""

    @abstractmethod
    async def atomic_batch(self, ops: list[WriteOp]) -> int:
        """Apply all ``ops`` as one transaction, or none. Returns the committed tx id."""

    @abstractmethod
    async def current_checkpoint(self) -> Checkpoint:
        """Unauthenticated head of the ledger."""

    @abstractmethod
    async def verifiable_get(self, key: bytes, prove_since_tx: int) -> VerifiableEntry:
        """Entry plus inclusion proof and a dual proof linking it to ``prove_since_tx``."""

    @abstractmethod
    async def verifiable_tx(self, tx: int, prove_since_tx: int) -> VerifiableTx:
        """Header of ``tx`` plus a dual proof linking it to ``prove_since_tx``."""
