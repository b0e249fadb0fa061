"""
Tests for the transaction Merkle tree and inclusion proofs.
"""

import hashlib

import pytest

from immuvoting.merkle import InclusionProof, MerkleTree, hash_pair, verify_inclusion


def _leaves(n):
    return [hashlib.sha256(f"leaf-{i}".encode()).digest() for i in range(n)]


class TestMerkleTree:
    def test_single_leaf_is_root(self):
        leaves = _leaves(1)
        tree = MerkleTree(leaves)
        assert tree.root == leaves[0]
        assert tree.get_proof(0).terms == []

    def test_odd_level_duplicates_last_node(self):
        a, b, c = _leaves(3)
        tree = MerkleTree([a, b, c])
        assert tree.root == hash_pair(hash_pair(a, b), hash_pair(c, c))

    def test_empty_tree_has_no_root(self):
        with pytest.raises(ValueError):
            MerkleTree([]).root

    def test_proof_index_out_of_range(self):
        with pytest.raises(IndexError):
            MerkleTree(_leaves(2)).get_proof(2)

    @pytest.mark.parametrize("width", [1, 2, 3, 5, 8, 13])
    def test_every_leaf_verifies(self, width):
        leaves = _leaves(width)
        tree = MerkleTree(leaves)
        for i, leaf in enumerate(leaves):
            assert verify_inclusion(tree.get_proof(i), leaf, tree.root)


class TestVerifyInclusion:
    def test_wrong_leaf_fails(self):
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        assert not verify_inclusion(tree.get_proof(1), leaves[2], tree.root)

    def test_tampered_term_fails(self):
        leaves = _leaves(6)
        tree = MerkleTree(leaves)
        proof = tree.get_proof(4)
        proof.terms[0] = b"\x00" * 32
        assert not verify_inclusion(proof, leaves[4], tree.root)

    def test_extra_term_fails(self):
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        proof = tree.get_proof(0)
        proof.terms.append(leaves[3])
        assert not verify_inclusion(proof, leaves[0], tree.root)

    def test_missing_term_fails(self):
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        proof = tree.get_proof(3)
        proof.terms.pop()
        assert not verify_inclusion(proof, leaves[3], tree.root)

    def test_leaf_outside_width_fails(self):
        leaves = _leaves(2)
        tree = MerkleTree(leaves)
        assert not verify_inclusion(InclusionProof(leaf=2, width=2, terms=[]), leaves[0], tree.root)
        assert not verify_inclusion(InclusionProof(leaf=0, width=0, terms=[]), leaves[0], tree.root)
