"""
Owner wallet for QuorumVault.

A wallet wraps one secp256k1 key-pair and provides:
  - Address derivation
  - Signing of host request hashes as (r, s) pairs
  - Building fully signed requests for an AccountHost
  - Encrypted import / export (AES-256-GCM, PBKDF2-HMAC-SHA256)
"""

from __future__ import annotations

import hashlib
import os
from typing import TYPE_CHECKING

from quorumvault_core.crypto_utils import (
    derive_address,
    generate_keypair,
    normalize_address,
    public_key_from_private,
    sign_hash,
)

if TYPE_CHECKING:
    from quorumvault_core.host import AccountHost, SignedRequest

KDF_ITERATIONS = 600_000
EXPORT_VERSION = 1


class Wallet:
    """Key-pair held by one vault owner."""

    def __init__(self, private_key: bytes, public_key: bytes | None = None,
                 address: str | None = None):
        self.private_key = private_key
        self.public_key = public_key or public_key_from_private(private_key)
        self.address = normalize_address(address or derive_address(self.public_key))

    # ---- factory methods ----

    @classmethod
    def create(cls, address: str | None = None) -> Wallet:
        """Generate a brand-new wallet."""
        priv, pub = generate_keypair()
        return cls(priv, pub, address)

    @classmethod
    def from_seed(cls, seed: str, address: str | None = None,
                  iterations: int = KDF_ITERATIONS) -> Wallet:
        """Derive a wallet deterministically from a seed phrase (PBKDF2)."""
        priv = hashlib.pbkdf2_hmac(
            "sha256", seed.encode("utf-8"), b"QuorumVault/seed/v1", iterations,
        )
        return cls(priv, address=address)

    # ---- signing ----

    def sign_hash(self, message_hash: int | bytes) -> tuple[int, int]:
        return sign_hash(self.private_key, message_hash)

    def sign_request(self, host: AccountHost, entrypoint: str, args: tuple = (),
                     nonce: int | None = None) -> SignedRequest:
        """Build a request for *host*, signed over the hash the host will compute."""
        from quorumvault_core.host import SignedRequest

        if nonce is None:
            nonce = host.get_nonce(self.address)
        tx_hash = host.request_hash(self.address, entrypoint, args, nonce)
        return SignedRequest(
            caller=self.address,
            entrypoint=entrypoint,
            args=tuple(args),
            nonce=nonce,
            signature=self.sign_hash(tx_hash),
        )

    # ---- serialisation ----

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "public_key": self.public_key.hex(),
        }

    def export_encrypted(self, passphrase: str, iterations: int = KDF_ITERATIONS) -> dict:
        """Export the wallet as an encrypted JSON-compatible dict."""
        salt = os.urandom(16)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        enc_priv, nonce, tag = self._aes_gcm_encrypt(key, self.private_key)
        return {
            "version": EXPORT_VERSION,
            "address": self.address,
            "public_key": self.public_key.hex(),
            "encrypted_private_key": enc_priv.hex(),
            "nonce": nonce.hex(),
            "tag": tag.hex(),
            "salt": salt.hex(),
            "kdf": "pbkdf2-hmac-sha256",
            "kdf_iterations": iterations,
        }

    @classmethod
    def import_encrypted(cls, data: dict, passphrase: str) -> Wallet:
        """Import from ``export_encrypted`` output.  Raises ValueError on a wrong passphrase."""
        if data.get("version") != EXPORT_VERSION:
            raise ValueError(f"Unsupported wallet export version: {data.get('version')}")
        salt = bytes.fromhex(data["salt"])
        iterations = data.get("kdf_iterations", KDF_ITERATIONS)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        priv = cls._aes_gcm_decrypt(
            key,
            bytes.fromhex(data["nonce"]),
            bytes.fromhex(data["encrypted_private_key"]),
            bytes.fromhex(data["tag"]),
        )
        return cls(priv, bytes.fromhex(data["public_key"]), data.get("address"))

    # ---- AES-256-GCM authenticated encryption ----

    @staticmethod
    def _aes_gcm_encrypt(key: bytes, data: bytes) -> tuple[bytes, bytes, bytes]:
        """Encrypt *data* with AES-256-GCM. Returns (ciphertext, nonce, tag)."""
        from Crypto.Cipher import AES
        nonce = os.urandom(12)
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return ciphertext, nonce, tag

    @staticmethod
    def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        """Decrypt and verify AES-256-GCM ciphertext. Raises ValueError on tamper."""
        from Crypto.Cipher import AES
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag)

    def __repr__(self) -> str:
        return f"Wallet({self.address})"
