"""
Owner and public-key registries for QuorumVault.

The owner set is fixed when the vault is initialised: there is no
add/remove operation.  Each owner may declare one verification key for
itself; a non-empty key is required before the owner can submit, confirm,
or be authenticated by signature.
"""

from __future__ import annotations

from typing import Iterable, Iterator

from quorumvault_core.crypto_utils import load_public_key, normalize_address
from quorumvault_core.errors import (
    DuplicateOwner,
    InvalidOwnerAddress,
    InvalidOwnerCount,
    InvalidPublicKey,
    NotOwner,
    PublicKeyNotSet,
)

MIN_OWNERS = 2


class OwnerRegistry:
    """Fixed set of owner addresses, in registration order."""

    def __init__(self, owners: Iterable[str]):
        try:
            addrs = [normalize_address(a) for a in owners]
        except (TypeError, ValueError) as exc:
            raise InvalidOwnerAddress(str(exc)) from exc
        if len(addrs) < MIN_OWNERS:
            raise InvalidOwnerCount(
                f"At least {MIN_OWNERS} owners required, got {len(addrs)}"
            )
        seen: set[str] = set()
        for addr in addrs:
            if addr in seen:
                raise DuplicateOwner(f"Owner {addr} listed more than once")
            seen.add(addr)
        self._owners: tuple[str, ...] = tuple(addrs)
        self._members: frozenset[str] = frozenset(addrs)

    @property
    def num_owners(self) -> int:
        return len(self._owners)

    def is_owner(self, address: str) -> bool:
        try:
            return normalize_address(address) in self._members
        except ValueError:
            return False

    def assert_owner(self, address: str) -> str:
        """Return the canonical address, or raise NotOwner."""
        if not self.is_owner(address):
            raise NotOwner(f"{address} is not an owner")
        return normalize_address(address)

    def __iter__(self) -> Iterator[str]:
        return iter(self._owners)

    def __len__(self) -> int:
        return len(self._owners)

    def to_list(self) -> list[str]:
        return list(self._owners)


class PublicKeyRegistry:
    """Per-owner self-declared verification keys (``b""`` when unset)."""

    def __init__(self):
        # address -> key bytes
        self.keys: dict[str, bytes] = {}
        self._saved: dict[str, bytes] | None = None

    # ── request journal ──────────────────────────────────────────

    def begin(self) -> None:
        self._saved = dict(self.keys)

    def commit(self) -> None:
        self._saved = None

    def rollback(self) -> None:
        if self._saved is not None:
            self.keys = self._saved
        self._saved = None

    def changes(self) -> dict[str, bytes]:
        """Keys set since ``begin``."""
        if self._saved is None:
            return {}
        return {a: k for a, k in self.keys.items() if self._saved.get(a) != k}

    # ── lookups ──────────────────────────────────────────────────

    def get_public_key(self, address: str) -> bytes:
        return self.keys.get(normalize_address(address), b"")

    def has_public_key(self, address: str) -> bool:
        return bool(self.get_public_key(address))

    def assert_has_public_key(self, address: str) -> bytes:
        key = self.get_public_key(address)
        if not key:
            raise PublicKeyNotSet(f"{address} has not set a public key")
        return key

    def set_public_key(self, caller: str, key: bytes) -> None:
        """Set *caller*'s own key.  There is no way to set someone else's."""
        try:
            load_public_key(key)
        except ValueError as exc:
            raise InvalidPublicKey(str(exc)) from exc
        self.keys[normalize_address(caller)] = bytes(key)
