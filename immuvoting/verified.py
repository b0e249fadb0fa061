"""
ImmuVoting - Verified Reads.

Reads a key together with an inclusion proof and a dual proof anchored
at the locally trusted checkpoint, verifies both, and only then moves
the trusted checkpoint forward. Nothing the server claims is trusted
without being recomputed from proof metadata or the local checkpoint.
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from immuvoting.checkpoint import Checkpoint, CheckpointCache
from immuvoting.client import LedgerClient
from immuvoting.exceptions import CorruptedDataError
from immuvoting.merkle import verify_inclusion
from immuvoting.proofs import encode_kv, encode_reference, leaf_digest, verify_dual_proof
from immuvoting.signing import verify_checkpoint_signature
from immuvoting.store.base import Entry

logger = logging.getLogger("immuvoting.verified")


class VerifiedReadEngine:
    """Verified ``get`` against one ledger, advancing a cached checkpoint.

    Args:
        client: Ledger handle.
        cache: Trusted checkpoint slot for this ledger's identity.
        public_key: When set, every new checkpoint must carry a valid
            server signature.
    """

    def __init__(
        self,
        client: LedgerClient,
        cache: CheckpointCache,
        public_key: Optional[Ed25519PublicKey] = None,
    ):
        self.client = client
        self.cache = cache
        self.public_key = public_key

    async def verified_get(self, key: bytes) -> Entry:
        async with self.cache.lock():
            old = await self.cache.load() or Checkpoint.genesis()

            verifiable = await self.client.verifiable_get(key, prove_since_tx=old.tx_id)
            entry = verifiable.entry
            dual_proof = verifiable.verifiable_tx.dual_proof

            served_key = entry.key if entry.referenced_by is None else entry.referenced_by.key
            if served_key != key:
                logger.error("Asked for %r, server proved %r", key, served_key)
                raise CorruptedDataError(f"server answered {key!r} with an entry for {served_key!r}")

            if entry.referenced_by is None:
                v_tx = entry.tx
                encoded = encode_kv(key, entry.value)
            else:
                v_tx = entry.referenced_by.tx
                encoded = encode_reference(
                    entry.referenced_by.key, entry.key, entry.referenced_by.at_tx
                )

            # The entry may be newer or older than what we already trust.
            if old.tx_id <= v_tx:
                if dual_proof.target_tx_metadata is None:
                    raise CorruptedDataError(f"proof for {key!r} carries no target metadata")
                eh = dual_proof.target_tx_metadata.eh
                source_id, source_alh = old.tx_id, old.tx_hash
                target_id, target_alh = v_tx, dual_proof.target_tx_metadata.alh()
            else:
                if dual_proof.source_tx_metadata is None:
                    raise CorruptedDataError(f"proof for {key!r} carries no source metadata")
                eh = dual_proof.source_tx_metadata.eh
                source_id, source_alh = v_tx, dual_proof.source_tx_metadata.alh()
                target_id, target_alh = old.tx_id, old.tx_hash

            if not verify_inclusion(verifiable.inclusion_proof, leaf_digest(encoded), eh):
                logger.error("Inclusion proof for %r failed at tx %d", key, v_tx)
                raise CorruptedDataError(f"inclusion proof for {key!r} does not verify")

            if not verify_dual_proof(dual_proof, source_id, target_id, source_alh, target_alh):
                logger.error(
                    "Dual proof between tx %d and tx %d failed for %r", source_id, target_id, key
                )
                raise CorruptedDataError(
                    f"ledger state at tx {target_id} is not a consistent extension of tx {source_id}"
                )

            signature = verifiable.verifiable_tx.signature
            if self.public_key is not None and not verify_checkpoint_signature(
                self.public_key, target_id, target_alh, signature
            ):
                logger.error("Checkpoint signature for tx %d failed", target_id)
                raise CorruptedDataError(f"checkpoint signature for tx {target_id} does not verify")

            new = Checkpoint(tx_id=target_id, tx_hash=target_alh, signature=signature)
            if not new.same_state(old) or new.signature != old.signature:
                await self.cache.save(new)
                if new.tx_id > old.tx_id:
                    logger.info("Trusted checkpoint advanced from tx %d to tx %d", old.tx_id, new.tx_id)

            return entry
