"""
Error taxonomy for QuorumVault.

Every failure aborts the whole request.  Each error class carries a stable
``code`` string so callers (and the HTTP API) can tell "not yet ready"
(ThresholdNotMet) apart from "never possible" (NotOwner) and "already done"
(AlreadyExecuted / AlreadyConfirmed).

Categories:
  - ConfigurationError  – init-time, fatal to deployment
  - AuthorizationError  – caller is not an owner / has no public key
  - StateError          – transaction lifecycle violations
  - AuthenticationError – bad signatures, replayed nonces
  - DispatchFailed      – the delegated call itself failed
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for all QuorumVault errors."""
    code = "VaultError"
    category = "internal"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "category": self.category, "message": self.message}


# ── configuration ────────────────────────────────────────────────

class ConfigurationError(VaultError):
    code = "ConfigurationError"
    category = "configuration"


class InvalidOwnerCount(ConfigurationError):
    code = "InvalidOwnerCount"


class InvalidOwnerAddress(ConfigurationError):
    code = "InvalidOwnerAddress"


class DuplicateOwner(ConfigurationError):
    code = "DuplicateOwner"


class InvalidThreshold(ConfigurationError):
    code = "InvalidThreshold"


# ── authorization ────────────────────────────────────────────────

class AuthorizationError(VaultError):
    code = "AuthorizationError"
    category = "authorization"


class NotOwner(AuthorizationError):
    code = "NotOwner"


class PublicKeyNotSet(AuthorizationError):
    code = "PublicKeyNotSet"


class InvalidPublicKey(AuthorizationError):
    code = "InvalidPublicKey"


# ── transaction state ────────────────────────────────────────────

class StateError(VaultError):
    code = "StateError"
    category = "state"


class TxNotFound(StateError):
    code = "TxNotFound"


class AlreadyConfirmed(StateError):
    code = "AlreadyConfirmed"


class AlreadyExecuted(StateError):
    code = "AlreadyExecuted"


class ThresholdNotMet(StateError):
    code = "ThresholdNotMet"


class InvalidCalldata(StateError):
    code = "InvalidCalldata"


# ── authentication ───────────────────────────────────────────────

class AuthenticationError(VaultError):
    code = "AuthenticationError"
    category = "authentication"


class InvalidSignatureLength(AuthenticationError):
    code = "InvalidSignatureLength"


class InvalidSignature(AuthenticationError):
    code = "InvalidSignature"


class InvalidNonce(AuthenticationError):
    code = "InvalidNonce"


# ── execution ────────────────────────────────────────────────────

class DispatchFailed(VaultError):
    """The execution gateway could not complete the delegated call."""
    code = "DispatchFailed"
    category = "execution"


# ── internal ─────────────────────────────────────────────────────

class InvariantViolation(VaultError):
    """A committed request would have left the vault in an inconsistent state."""
    code = "InvariantViolation"


ERROR_CODES: dict[str, type[VaultError]] = {
    cls.code: cls
    for cls in (
        InvalidOwnerCount,
        InvalidOwnerAddress,
        DuplicateOwner,
        InvalidThreshold,
        NotOwner,
        PublicKeyNotSet,
        InvalidPublicKey,
        TxNotFound,
        AlreadyConfirmed,
        AlreadyExecuted,
        ThresholdNotMet,
        InvalidCalldata,
        InvalidSignatureLength,
        InvalidSignature,
        InvalidNonce,
        DispatchFailed,
        InvariantViolation,
    )
}
