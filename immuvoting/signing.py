"""Checkpoint signatures.

Optional Ed25519 signatures over (tx id, tx hash), produced by the
ledger server and checked by clients that pin the server's public key.
"""

import struct
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

_DOMAIN = b"immuvoting-checkpoint\x00"


def checkpoint_message(tx_id: int, tx_hash: bytes) -> bytes:
    return _DOMAIN + struct.pack(">Q", tx_id) + tx_hash


class CheckpointSigner:
    """Signs checkpoints with the server's private key."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._key = private_key

    @classmethod
    def from_hex(cls, seed_hex: str) -> "CheckpointSigner":
        return cls(Ed25519PrivateKey.from_private_bytes(bytes.fromhex(seed_hex)))

    @classmethod
    def generate(cls) -> "CheckpointSigner":
        return cls(Ed25519PrivateKey.generate())

    def sign(self, tx_id: int, tx_hash: bytes) -> bytes:
        return self._key.sign(checkpoint_message(tx_id, tx_hash))

    def public_key(self) -> Ed25519PublicKey:
        return self._key.public_key()

    def public_key_hex(self) -> str:
        return self.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()

    def seed_hex(self) -> str:
        return self._key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()).hex()


def load_public_key(public_hex: str) -> Ed25519PublicKey:
    return Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_hex))


def verify_checkpoint_signature(
    public_key: Ed25519PublicKey,
    tx_id: int,
    tx_hash: bytes,
    signature: Optional[bytes],
) -> bool:
    if not signature:
        return False
    try:
        public_key.verify(signature, checkpoint_message(tx_id, tx_hash))
    except InvalidSignature:
        return False
    return True
