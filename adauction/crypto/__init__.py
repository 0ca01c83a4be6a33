"""
Cryptographic primitives for payment authorizations.

This module provides:
- Hashing (SHA-256, Keccak-256)
- secp256k1 keypairs and Ethereum-style addresses
- Recoverable ECDSA signatures, so a facilitator can derive the payer
  address from a signed authorization without being told the public key

Signatures are 65 bytes: r (32) || s (32) || v (1), with v in {27, 28}
and s normalized to the lower half of the curve order.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SIGNATURE_SIZE = 65


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """Compute SHA-256 hash."""
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: address derivation and authorization digests.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Keys and Addresses
# =============================================================================


def address_from_public_key(public_key: bytes) -> str:
    """Last 20 bytes of keccak256(public_key), 0x-prefixed lowercase hex."""
    return "0x" + keccak256(public_key)[-20:].hex()


@dataclass
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key
        public_key: 64-byte uncompressed public key (x || y)
    """
    private_key: bytes
    public_key: bytes

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key)


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive the 64-byte public key from a 32-byte private key.

    Raises:
        ValueError: If the key has the wrong length
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    x, y = secp256k1.privtopub(private_key)
    return x.to_bytes(32, byteorder="big") + y.to_bytes(32, byteorder="big")


def generate_keypair() -> KeyPair:
    """Generate a new random keypair."""
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def keypair_from_hex(private_key_hex: str) -> KeyPair:
    """Load a keypair from a hex-encoded private key."""
    private_key = hex_to_bytes(private_key_hex)
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


# =============================================================================
# Recoverable Signatures
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a 32-byte digest.

    Returns:
        65-byte signature r || s || v
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Low-s normalization flips the recovery parity
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s
        v = 55 - v

    return r.to_bytes(32, byteorder="big") + s.to_bytes(32, byteorder="big") + bytes([v])


def recover_public_key(message_hash: bytes, signature: bytes) -> Optional[bytes]:
    """
    Recover the signer's 64-byte public key.

    Returns:
        Public key, or None if the signature is malformed or unrecoverable
    """
    if len(message_hash) != 32 or len(signature) != SIGNATURE_SIZE:
        return None

    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:64], byteorder="big")
    v = signature[64]

    if v not in (27, 28):
        return None
    if not (1 <= r < SECP256K1_ORDER) or not (1 <= s <= SECP256K1_ORDER // 2):
        return None

    try:
        x, y = secp256k1.ecdsa_raw_recover(message_hash, (v, r, s))
    except Exception:
        return None

    return x.to_bytes(32, byteorder="big") + y.to_bytes(32, byteorder="big")


def recover_address(message_hash: bytes, signature: bytes) -> Optional[str]:
    """Recover the signer's address, or None on failure."""
    public_key = recover_public_key(message_hash, signature)
    if public_key is None:
        return None
    return address_from_public_key(public_key)


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


def is_valid_address(address: str) -> bool:
    """Check if string is a 0x-prefixed 20-byte hex address."""
    if not isinstance(address, str) or not address.startswith("0x"):
        return False
    if len(address) != 42:
        return False
    try:
        int(address, 16)
        return True
    except ValueError:
        return False


def normalize_address(address: str) -> str:
    """Lowercase form used for address comparisons."""
    return address.lower()


__all__ = [
    "sha256",
    "keccak256",
    "KeyPair",
    "generate_keypair",
    "keypair_from_hex",
    "private_key_to_public_key",
    "address_from_public_key",
    "sign",
    "recover_public_key",
    "recover_address",
    "bytes_to_hex",
    "hex_to_bytes",
    "is_valid_address",
    "normalize_address",
    "SIGNATURE_SIZE",
]
