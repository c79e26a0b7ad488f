"""
QuorumVault - an M-of-N multisig account engine.

Key features:
- Fixed owner set with a confirmation threshold chosen at initialisation
- Submit / confirm / execute lifecycle with one-shot execution
- secp256k1 ECDSA caller authentication shared by every validation hook
- Atomic requests with post-request invariant checks
- SQLite persistence, TOML configuration and an aiohttp REST API
"""

__version__ = "1.0.0"
__all__ = [
    "account",
    "api",
    "config",
    "crypto_utils",
    "errors",
    "events",
    "gateway",
    "host",
    "invariants",
    "ledger",
    "owners",
    "signature",
    "storage",
    "wallet",
]
