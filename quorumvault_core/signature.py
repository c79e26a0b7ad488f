"""
Signature validation for QuorumVault.

One routine, ``validate_signature``, is the only place a caller's signature
is checked.  The declare, deployment and transaction validation hooks on
the account all resolve the caller's key and delegate here, so the
signature rules are identical at every entry point.

A signature is exactly two integer components ``(r, s)``: secp256k1 ECDSA
over the 32-byte big-endian form of the message hash.
"""

from __future__ import annotations

from typing import Sequence

from quorumvault_core.crypto_utils import verify_hash
from quorumvault_core.errors import InvalidSignature, InvalidSignatureLength

VALIDATED = "VALID"
SIGNATURE_LENGTH = 2


def parse_signature(raw: Sequence) -> list[int]:
    """Coerce ``[r, s]`` given as ints or hex/decimal strings.

    Length is not checked here; that is the validator's job.
    """
    out: list[int] = []
    for part in raw:
        if isinstance(part, int) and not isinstance(part, bool):
            out.append(part)
            continue
        try:
            if isinstance(part, str):
                text = part.strip().lower()
                out.append(int(text, 16) if text.startswith("0x") else int(text))
            else:
                out.append(int(part))
        except (TypeError, ValueError) as exc:
            raise InvalidSignature(f"Malformed signature component: {part!r}") from exc
    return out


def validate_signature(
    message_hash: int | bytes,
    public_key: bytes,
    signature: Sequence[int],
) -> str:
    """Return VALIDATED or raise.

    Raises InvalidSignatureLength when *signature* is not exactly (r, s),
    before any verification is attempted, and InvalidSignature on any
    cryptographic mismatch.
    """
    if len(signature) != SIGNATURE_LENGTH:
        raise InvalidSignatureLength(
            f"Expected {SIGNATURE_LENGTH} signature components, got {len(signature)}"
        )
    r, s = signature
    if not verify_hash(public_key, message_hash, r, s):
        raise InvalidSignature("Signature does not match public key")
    return VALIDATED
