"""
ImmuVoting - Checkpoint Cache.

Holds the single most-recently-trusted ledger checkpoint for one store
identity and serializes read-modify-write cycles over it. A verified
read loads the old checkpoint, verifies against it and saves the new
one, all while holding ``lock()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

from immuvoting.proofs import ZERO_DIGEST, b64, unb64

logger = logging.getLogger("immuvoting.checkpoint")


@dataclass(frozen=True)
class Checkpoint:
    """Everything committed up to and including ``tx_id`` is summarized by ``tx_hash``."""

    tx_id: int
    tx_hash: bytes
    signature: Optional[bytes] = None

    @classmethod
    def genesis(cls) -> Checkpoint:
        """The empty ledger: nothing committed, nothing trusted yet."""
        return cls(tx_id=0, tx_hash=ZERO_DIGEST)

    def same_state(self, other: Optional[Checkpoint]) -> bool:
        return other is not None and self.tx_id == other.tx_id and self.tx_hash == other.tx_hash

    def to_dict(self) -> dict:
        return {"tx_id": self.tx_id, "tx_hash": b64(self.tx_hash), "signature": b64(self.signature)}

    @classmethod
    def from_dict(cls, data: dict) -> Checkpoint:
        return cls(
            tx_id=int(data["tx_id"]),
            tx_hash=unb64(data["tx_hash"]),
            signature=unb64(data.get("signature")),
        )


class CheckpointCache(ABC):
    """Durable slot for one trusted checkpoint, guarded by a non-recursive lock.

    ``load`` and ``save`` may only be called while the lock is held.
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self) -> AsyncIterator[None]:
        async with self._lock:
            yield

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def _require_lock(self) -> None:
        if not self._lock.locked():
            raise RuntimeError("checkpoint cache accessed without holding its lock")

    async def load(self) -> Optional[Checkpoint]:
        self._require_lock()
        return await self._read()

    async def save(self, checkpoint: Checkpoint) -> None:
        self._require_lock()
        current = await self._read()
        if current is not None and checkpoint.tx_id < current.tx_id:
            raise ValueError(
                f"refusing to downgrade trusted checkpoint from tx {current.tx_id} "
                f"to tx {checkpoint.tx_id}"
            )
        await self._write(checkpoint)
        logger.debug("Trusted checkpoint is now tx %d", checkpoint.tx_id)

    @abstractmethod
    async def _read(self) -> Optional[Checkpoint]: ...

    @abstractmethod
    async def _write(self, checkpoint: Checkpoint) -> None: ...


class MemoryCheckpointCache(CheckpointCache):
    """Process-local cache; trust is lost on restart."""

    def __init__(self, checkpoint: Optional[Checkpoint] = None):
        super().__init__()
        self._checkpoint = checkpoint

    async def _read(self) -> Optional[Checkpoint]:
        return self._checkpoint

    async def _write(self, checkpoint: Checkpoint) -> None:
        self._checkpoint = checkpoint


class FileCheckpointCache(CheckpointCache):
    """JSON file per store identity, replaced atomically on every save."""

    def __init__(self, state_dir: str | Path, identity: str):
        super().__init__()
        self.state_dir = Path(state_dir)
        self.identity = identity
        self.path = self.state_dir / f".state-{identity}"

    async def _read(self) -> Optional[Checkpoint]:
        return await asyncio.to_thread(self._read_sync)

    async def _write(self, checkpoint: Checkpoint) -> None:
        await asyncio.to_thread(self._write_sync, checkpoint)

    def _read_sync(self) -> Optional[Checkpoint]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Checkpoint.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            # An unreadable trust anchor must not be silently replaced.
            raise ValueError(f"corrupt checkpoint file {self.path}: {e}") from e

    def _write_sync(self, checkpoint: Checkpoint) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".state-tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(checkpoint.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
