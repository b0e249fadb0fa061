"""
ImmuVoting - Merkle Tree Utilities.

Binary Merkle tree over the leaf digests of one ledger transaction.
Its root is the transaction's entries hash (``eh``), and inclusion
proofs show that a single entry was committed in that transaction.

Odd levels duplicate their last node. Proof paths are driven by the
leaf index and tree width only, so a proof carries no direction flags
that a tampering server could flip.
"""

import hashlib
from dataclasses import dataclass, field
from typing import List

DIGEST_SIZE = hashlib.sha256().digest_size
NODE_PREFIX = b"\x01"


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Hash two child digests together."""
    return hashlib.sha256(NODE_PREFIX + left + right).digest()


@dataclass
class InclusionProof:
    """Sibling path from leaf ``leaf`` of a ``width``-leaf tree up to the root."""

    leaf: int
    width: int
    terms: List[bytes] = field(default_factory=list)


class MerkleTree:
    """
    Merkle tree for one transaction's entries.
    """

    def __init__(self, leaves: List[bytes]):
        self.leaves = list(leaves)
        self.levels = self._build_levels(self.leaves)

    def _build_levels(self, leaves: List[bytes]) -> List[List[bytes]]:
        """Build every level bottom-up; the last level holds the root."""
        if not leaves:
            return []

        levels = [leaves]
        current_level = leaves

        while len(current_level) > 1:
            next_level = []
            for i in range(0, len(current_level), 2):
                left = current_level[i]
                # Handle odd number of nodes by duplicating the last one
                right = current_level[i + 1] if i + 1 < len(current_level) else left
                next_level.append(hash_pair(left, right))
            levels.append(next_level)
            current_level = next_level

        return levels

    @property
    def root(self) -> bytes:
        """Return the root digest of the tree."""
        if not self.levels:
            raise ValueError("empty tree has no root")
        return self.levels[-1][0]

    def get_proof(self, index: int) -> InclusionProof:
        """Get an inclusion proof for the leaf at ``index``."""
        if index < 0 or index >= len(self.leaves):
            raise IndexError(f"leaf {index} out of range for width {len(self.leaves)}")

        terms = []
        current_index = index

        for level in self.levels[:-1]:
            sibling_index = current_index ^ 1
            # A missing sibling means the node was paired with itself.
            if sibling_index < len(level):
                terms.append(level[sibling_index])
            current_index //= 2

        return InclusionProof(leaf=index, width=len(self.leaves), terms=terms)


def verify_inclusion(proof: InclusionProof, leaf_digest: bytes, root: bytes) -> bool:
    """Verify that ``leaf_digest`` sits at ``proof.leaf`` under ``root``."""
    if proof.width <= 0 or not 0 <= proof.leaf < proof.width:
        return False

    current = leaf_digest
    index = proof.leaf
    width = proof.width
    terms = iter(proof.terms)
    consumed = 0

    while width > 1:
        if index % 2 == 0:
            if index + 1 < width:
                sibling = next(terms, None)
                if sibling is None:
                    return False
                consumed += 1
                current = hash_pair(current, sibling)
            else:
                current = hash_pair(current, current)
        else:
            sibling = next(terms, None)
            if sibling is None:
                return False
            consumed += 1
            current = hash_pair(sibling, current)
        index //= 2
        width = (width + 1) // 2

    if consumed != len(proof.terms):
        return False
    return current == root
