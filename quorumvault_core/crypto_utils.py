"""
Cryptographic primitives for QuorumVault.

Provides:
  - Field-element helpers (FIELD_PRIME, range checks, address normalisation)
  - Keccak-256 hashing and entry-point selectors
  - secp256k1 ECDSA key generation, signing and verification over
    pre-hashed messages, with signatures as two integer components (r, s)
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from Crypto.Hash import keccak
from ecdsa import (
    SECP256k1,
    BadSignatureError,
    MalformedPointError,
    SigningKey,
    VerifyingKey,
)
from ecdsa.util import number_to_string, sigdecode_strings, sigencode_strings

# Prime of the field every target, selector and payload element lives in.
FIELD_PRIME = 2**251 + 17 * 2**192 + 1
MASK_250 = 2**250 - 1
CURVE_ORDER = SECP256k1.order


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


# ===================================================================
#  Field elements
# ===================================================================

def is_field_element(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < FIELD_PRIME


def to_field_element(value: int | str) -> int:
    """Parse an int or a ``0x``-hex / decimal string into a field element."""
    if isinstance(value, str):
        text = value.strip().lower()
        value = int(text, 16) if text.startswith("0x") else int(text)
    if not is_field_element(value):
        raise ValueError(f"{value!r} is not a field element")
    return value


def normalize_address(address: int | str) -> str:
    """Canonical ``0x``-prefixed lowercase hex form of an address."""
    if isinstance(address, str):
        text = address.strip().lower()
        if not text.startswith("0x"):
            raise ValueError(f"Address must be 0x-prefixed hex: {address!r}")
        address = int(text, 16)
    if not is_field_element(address):
        raise ValueError(f"Address out of range: {address!r}")
    return hex(address)


def hash_elements(elements: Iterable[int]) -> int:
    """Keccak-256 over 32-byte big-endian words, reduced to 250 bits."""
    data = b"".join(to_field_element(e).to_bytes(32, "big") for e in elements)
    return int.from_bytes(keccak256(data), "big") & MASK_250


def get_selector_from_name(name: str) -> int:
    """Entry-point selector: Keccak-256 of the ASCII name masked to 250 bits."""
    return int.from_bytes(keccak256(name.encode("ascii")), "big") & MASK_250


# ===================================================================
#  ECDSA (secp256k1)
# ===================================================================

def generate_keypair() -> tuple[bytes, bytes]:
    """Return (private_key[32], public_key[65] with 0x04 prefix)."""
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), b"\x04" + sk.get_verifying_key().to_string()


def public_key_from_private(private_key: bytes) -> bytes:
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return b"\x04" + sk.get_verifying_key().to_string()


def load_public_key(public_key: bytes) -> VerifyingKey:
    """Parse raw (64), uncompressed (65) or compressed (33) key bytes.

    Raises ValueError for anything that is not a point on the curve.
    """
    if not public_key:
        raise ValueError("Public key is empty")
    try:
        return VerifyingKey.from_string(bytes(public_key), curve=SECP256k1)
    except (MalformedPointError, AssertionError, ValueError) as exc:
        raise ValueError(f"Malformed public key: {exc}") from exc


def derive_address(public_key: bytes) -> str:
    """Address = last 20 bytes of Keccak-256 over the raw 64-byte point."""
    vk = load_public_key(public_key)
    return "0x" + keccak256(vk.to_string())[-20:].hex()


def hash_to_digest(message_hash: int | bytes) -> bytes:
    """32-byte big-endian digest for an int field element or raw hash bytes."""
    if isinstance(message_hash, (bytes, bytearray)):
        if len(message_hash) != 32:
            raise ValueError("Message hash must be 32 bytes")
        return bytes(message_hash)
    if not 0 <= message_hash < 2**256:
        raise ValueError("Message hash out of range")
    return message_hash.to_bytes(32, "big")


def sign_hash(private_key: bytes, message_hash: int | bytes) -> tuple[int, int]:
    """Deterministic (RFC 6979) ECDSA signature over a pre-hashed message."""
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    r_bytes, s_bytes = sk.sign_digest_deterministic(
        hash_to_digest(message_hash),
        hashfunc=hashlib.sha256,
        sigencode=sigencode_strings,
    )
    return int.from_bytes(r_bytes, "big"), int.from_bytes(s_bytes, "big")


def verify_hash(public_key: bytes, message_hash: int | bytes, r: int, s: int) -> bool:
    """Check (r, s) against a pre-hashed message.  Never raises on bad input."""
    if not (isinstance(r, int) and isinstance(s, int)):
        return False
    if not (0 < r < CURVE_ORDER and 0 < s < CURVE_ORDER):
        return False
    try:
        vk = load_public_key(public_key)
        digest = hash_to_digest(message_hash)
    except ValueError:
        return False
    encoded = (number_to_string(r, CURVE_ORDER), number_to_string(s, CURVE_ORDER))
    try:
        return vk.verify_digest(encoded, digest, sigdecode=sigdecode_strings)
    except BadSignatureError:
        return False
