"""
ImmuVoting - Ledger Proofs.

Digest construction and verification for the authenticated ledger:

- leaf encodings for direct values and alias references,
- transaction metadata and its accumulated linear hash (``alh``),
- linear proofs chaining one transaction's alh to a later one,
- dual proofs tying two checkpoints together.

Verification only trusts digests recomputed from proof metadata and
from the caller's own checkpoint, never a digest the server merely claims.
"""

from __future__ import annotations

import base64
import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, Optional

from immuvoting.merkle import DIGEST_SIZE, InclusionProof

ZERO_DIGEST = b"\x00" * DIGEST_SIZE

SET_KEY_PREFIX = b"\x00"
PLAIN_VALUE_PREFIX = b"\x00"
REFERENCE_VALUE_PREFIX = b"\x01"


# ─── Leaf Encoding ────────────────────────────────────────────────────


def encode_kv(key: bytes, value: bytes) -> tuple[bytes, bytes]:
    """Encoded (key, value) committed for a direct write."""
    return SET_KEY_PREFIX + key, PLAIN_VALUE_PREFIX + value


def encode_reference(key: bytes, referenced_key: bytes, at_tx: int) -> tuple[bytes, bytes]:
    """Encoded (key, value) committed for an alias pointing at ``referenced_key``."""
    value = REFERENCE_VALUE_PREFIX + struct.pack(">Q", at_tx) + SET_KEY_PREFIX + referenced_key
    return SET_KEY_PREFIX + key, value


def leaf_digest(encoded: tuple[bytes, bytes]) -> bytes:
    """Digest of one encoded entry, as committed into the transaction tree."""
    key, value = encoded
    if len(key) > 0xFFFF:
        raise ValueError(f"key too long: {len(key)} bytes")
    return hashlib.sha256(
        struct.pack(">H", len(key)) + key + hashlib.sha256(value).digest()
    ).digest()


# ─── Transaction Metadata ─────────────────────────────────────────────


@dataclass
class TxMetadata:
    """Header of one committed transaction."""

    id: int
    prev_alh: bytes
    ts: int
    nentries: int
    eh: bytes

    def inner_hash(self) -> bytes:
        return hashlib.sha256(struct.pack(">QI", self.ts, self.nentries) + self.eh).digest()

    def alh(self) -> bytes:
        """Accumulated linear hash: summarizes every transaction up to this one."""
        return accumulate(self.id, self.prev_alh, self.inner_hash())


def accumulate(tx_id: int, prev_alh: bytes, inner_hash: bytes) -> bytes:
    return hashlib.sha256(struct.pack(">Q", tx_id) + prev_alh + inner_hash).digest()


@dataclass
class LinearProof:
    """``terms[0]`` is the source alh, ``terms[i]`` the inner hash of tx source+i."""

    source_tx_id: int
    target_tx_id: int
    terms: list[bytes] = field(default_factory=list)


@dataclass
class DualProof:
    """Evidence that the target checkpoint is an append-only extension of the source.

    ``source_tx_metadata`` is None when the source is the genesis (tx 0).
    """

    source_tx_metadata: Optional[TxMetadata]
    target_tx_metadata: TxMetadata
    linear_proof: LinearProof


@dataclass
class VerifiableTx:
    """A transaction header plus a dual proof anchored at a caller-chosen tx."""

    tx: TxMetadata
    dual_proof: DualProof
    signature: Optional[bytes] = None


# ─── Verification ─────────────────────────────────────────────────────


def verify_linear_proof(
    proof: LinearProof,
    source_tx_id: int,
    target_tx_id: int,
    source_alh: bytes,
    target_alh: bytes,
) -> bool:
    """Re-accumulate every inner hash from source to target."""
    if proof.source_tx_id != source_tx_id or proof.target_tx_id != target_tx_id:
        return False
    if source_tx_id > target_tx_id:
        return False
    if len(proof.terms) != target_tx_id - source_tx_id + 1:
        return False
    if proof.terms[0] != source_alh:
        return False

    calculated = proof.terms[0]
    for offset, inner in enumerate(proof.terms[1:], start=1):
        calculated = accumulate(source_tx_id + offset, calculated, inner)

    return calculated == target_alh


def verify_dual_proof(
    proof: DualProof,
    source_tx_id: int,
    target_tx_id: int,
    source_alh: bytes,
    target_alh: bytes,
) -> bool:
    """Check that ``(target_tx_id, target_alh)`` consistently extends the source."""
    if proof is None or proof.target_tx_metadata is None:
        return False
    if source_tx_id > target_tx_id:
        return False

    if source_tx_id == 0:
        if proof.source_tx_metadata is not None or source_alh != ZERO_DIGEST:
            return False
    else:
        source_md = proof.source_tx_metadata
        if source_md is None or source_md.id != source_tx_id:
            return False
        if source_md.alh() != source_alh:
            return False

    target_md = proof.target_tx_metadata
    if target_md.id != target_tx_id or target_md.alh() != target_alh:
        return False

    return verify_linear_proof(
        proof.linear_proof, source_tx_id, target_tx_id, source_alh, target_alh
    )


# ─── JSON Codec ───────────────────────────────────────────────────────
# Byte fields travel as standard base64 strings.


def b64(data: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(data).decode("ascii") if data is not None else None


def unb64(data: Optional[str]) -> Optional[bytes]:
    return base64.b64decode(data, validate=True) if data is not None else None


def tx_metadata_to_dict(md: TxMetadata) -> dict[str, Any]:
    return {
        "id": md.id,
        "prev_alh": b64(md.prev_alh),
        "ts": md.ts,
        "nentries": md.nentries,
        "eh": b64(md.eh),
    }


def tx_metadata_from_dict(data: dict[str, Any]) -> TxMetadata:
    return TxMetadata(
        id=int(data["id"]),
        prev_alh=unb64(data["prev_alh"]),
        ts=int(data["ts"]),
        nentries=int(data["nentries"]),
        eh=unb64(data["eh"]),
    )


def dual_proof_to_dict(proof: DualProof) -> dict[str, Any]:
    return {
        "source_tx_metadata": (
            tx_metadata_to_dict(proof.source_tx_metadata)
            if proof.source_tx_metadata is not None
            else None
        ),
        "target_tx_metadata": tx_metadata_to_dict(proof.target_tx_metadata),
        "linear_proof": {
            "source_tx_id": proof.linear_proof.source_tx_id,
            "target_tx_id": proof.linear_proof.target_tx_id,
            "terms": [b64(t) for t in proof.linear_proof.terms],
        },
    }


def dual_proof_from_dict(data: dict[str, Any]) -> DualProof:
    source = data.get("source_tx_metadata")
    linear = data["linear_proof"]
    return DualProof(
        source_tx_metadata=tx_metadata_from_dict(source) if source is not None else None,
        target_tx_metadata=tx_metadata_from_dict(data["target_tx_metadata"]),
        linear_proof=LinearProof(
            source_tx_id=int(linear["source_tx_id"]),
            target_tx_id=int(linear["target_tx_id"]),
            terms=[unb64(t) for t in linear["terms"]],
        ),
    )


def verifiable_tx_to_dict(vtx: VerifiableTx) -> dict[str, Any]:
    return {
        "tx": tx_metadata_to_dict(vtx.tx),
        "dual_proof": dual_proof_to_dict(vtx.dual_proof),
        "signature": b64(vtx.signature),
    }


def verifiable_tx_from_dict(data: dict[str, Any]) -> VerifiableTx:
    return VerifiableTx(
        tx=tx_metadata_from_dict(data["tx"]),
        dual_proof=dual_proof_from_dict(data["dual_proof"]),
        signature=unb64(data.get("signature")),
    )


def inclusion_proof_to_dict(proof: InclusionProof) -> dict[str, Any]:
    return {"leaf": proof.leaf, "width": proof.width, "terms": [b64(t) for t in proof.terms]}


def inclusion_proof_from_dict(data: dict[str, Any]) -> InclusionProof:
    return InclusionProof(
        leaf=int(data["leaf"]),
        width=int(data["width"]),
        terms=[unb64(t) for t in data["terms"]],
    )
