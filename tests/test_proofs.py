"""
Tests for leaf encodings, accumulated hashes and dual proofs.
"""

import hashlib
import struct

from immuvoting.proofs import (
    ZERO_DIGEST,
    DualProof,
    LinearProof,
    TxMetadata,
    VerifiableTx,
    encode_kv,
    encode_reference,
    leaf_digest,
    verifiable_tx_from_dict,
    verifiable_tx_to_dict,
    verify_dual_proof,
    verify_linear_proof,
)


def _chain(n):
    """Build ``n`` consecutive tx headers starting after genesis."""
    chain = []
    prev = ZERO_DIGEST
    for tx_id in range(1, n + 1):
        md = TxMetadata(
            id=tx_id,
            prev_alh=prev,
            ts=1_700_000_000 + tx_id,
            nentries=1,
            eh=hashlib.sha256(f"eh-{tx_id}".encode()).digest(),
        )
        chain.append(md)
        prev = md.alh()
    return chain


def _dual(chain, source_id, target_id):
    source_md = chain[source_id - 1] if source_id else None
    target_md = chain[target_id - 1]
    terms = [source_md.alh() if source_md else ZERO_DIGEST]
    terms += [md.inner_hash() for md in chain[source_id:target_id]]
    return DualProof(source_md, target_md, LinearProof(source_id, target_id, terms))


class TestEncoding:
    def test_direct_entry_prefixes(self):
        assert encode_kv(b"k", b"v") == (b"\x00k", b"\x00v")

    def test_reference_layout(self):
        key, value = encode_reference(b"alias", b"target", 7)
        assert key == b"\x00alias"
        assert value == b"\x01" + struct.pack(">Q", 7) + b"\x00target"

    def test_leaf_digest_layout(self):
        expected = hashlib.sha256(
            struct.pack(">H", 2) + b"\x00k" + hashlib.sha256(b"\x00v").digest()
        ).digest()
        assert leaf_digest(encode_kv(b"k", b"v")) == expected

    def test_reference_and_value_digests_differ(self):
        assert leaf_digest(encode_kv(b"a", b"\x01")) != leaf_digest(encode_reference(b"a", b"", 0))


class TestAccumulatedHash:
    def test_alh_chains_previous(self):
        chain = _chain(2)
        assert chain[1].prev_alh == chain[0].alh()
        assert chain[0].alh() != chain[1].alh()

    def test_inner_hash_covers_header_fields(self):
        md = _chain(1)[0]
        other = TxMetadata(md.id, md.prev_alh, md.ts + 1, md.nentries, md.eh)
        assert md.inner_hash() != other.inner_hash()


class TestDualProof:
    def test_genesis_to_head(self):
        chain = _chain(4)
        assert verify_dual_proof(_dual(chain, 0, 4), 0, 4, ZERO_DIGEST, chain[3].alh())

    def test_between_checkpoints(self):
        chain = _chain(5)
        assert verify_dual_proof(_dual(chain, 2, 5), 2, 5, chain[1].alh(), chain[4].alh())

    def test_same_tx(self):
        chain = _chain(3)
        assert verify_dual_proof(_dual(chain, 3, 3), 3, 3, chain[2].alh(), chain[2].alh())

    def test_rewritten_history_fails(self):
        chain = _chain(5)
        trusted = chain[2].alh()
        forged = _chain(5)
        forged[2] = TxMetadata(3, forged[1].alh(), 1, 1, ZERO_DIGEST)
        assert not verify_dual_proof(_dual(forged, 3, 5), 3, 5, trusted, forged[4].alh())

    def test_tampered_linear_term_fails(self):
        chain = _chain(4)
        proof = _dual(chain, 1, 4)
        proof.linear_proof.terms[2] = ZERO_DIGEST
        assert not verify_dual_proof(proof, 1, 4, chain[0].alh(), chain[3].alh())

    def test_claimed_target_hash_must_match_metadata(self):
        chain = _chain(3)
        assert not verify_dual_proof(_dual(chain, 1, 3), 1, 3, chain[0].alh(), ZERO_DIGEST)

    def test_genesis_source_with_metadata_fails(self):
        chain = _chain(2)
        proof = _dual(chain, 0, 2)
        proof.source_tx_metadata = chain[0]
        assert not verify_dual_proof(proof, 0, 2, ZERO_DIGEST, chain[1].alh())

    def test_reversed_order_fails(self):
        chain = _chain(3)
        assert not verify_dual_proof(_dual(chain, 1, 3), 3, 1, chain[2].alh(), chain[0].alh())

    def test_linear_proof_length_checked(self):
        chain = _chain(3)
        proof = _dual(chain, 1, 3).linear_proof
        proof.terms.pop()
        assert not verify_linear_proof(proof, 1, 3, chain[0].alh(), chain[2].alh())


def test_verifiable_tx_json_codec():
    chain = _chain(3)
    vtx = VerifiableTx(tx=chain[2], dual_proof=_dual(chain, 1, 3), signature=b"sig")
    decoded = verifiable_tx_from_dict(verifiable_tx_to_dict(vtx))
    assert decoded == vtx
    assert verify_dual_proof(decoded.dual_proof, 1, 3, chain[0].alh(), chain[2].alh())
