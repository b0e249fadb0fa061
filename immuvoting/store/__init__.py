"""ImmuVoting Store - authenticated ledger backends."""

from immuvoting.store.base import (
    Entry,
    KVWrite,
    LedgerStore,
    Reference,
    ReferenceWrite,
    VerifiableEntry,
    WriteOp,
)
from immuvoting.store.sqlite import SQLiteLedgerStore

__all__ = [
    "Entry",
    "KVWrite",
    "LedgerStore",
    "Reference",
    "ReferenceWrite",
    "SQLiteLedgerStore",
    "VerifiableEntry",
    "WriteOp",
]
