"""
Account-abstraction host for QuorumVault.

The host sits in front of a MultisigAccount and processes signed requests
one at a time:

  1. Check the caller's nonce (replayed or out-of-order requests fail).
  2. Compute the request hash the caller must have signed.
  3. Run the matching authentication hook: ``validate_public_key`` for
     key changes, ``validate_transaction`` for submit / confirm.
  4. Run the entry point.
  5. Advance the caller's nonce and persist what the request changed.

Steps 3-5 run inside one account request, so a failure anywhere
(including the store write) leaves both the vault state and the nonce as
they were.  ``execute_transaction`` is open to any caller: the
authorisation lives in the accumulated confirmations.

Declare and deploy requests run the matching validation hook and record
the declared class / deployment in the vault state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from quorumvault_core.account import Deployment, MultisigAccount, RequestContext, VaultState
from quorumvault_core.crypto_utils import (
    get_selector_from_name,
    hash_elements,
    normalize_address,
    to_field_element,
)
from quorumvault_core.errors import InvalidCalldata, InvalidNonce, VaultError

if TYPE_CHECKING:
    from quorumvault_core.storage import VaultStore

logger = logging.getLogger("quorumvault_host")

ENTRYPOINTS = (
    "set_public_key",
    "submit_transaction",
    "confirm_transaction",
    "execute_transaction",
)
SIGNED_ENTRYPOINTS = frozenset({"set_public_key", "submit_transaction", "confirm_transaction"})
DECLARE = "__declare__"
DEPLOY = "__deploy__"

__all__ = [
    "AccountHost",
    "Deployment",
    "SignedRequest",
    "compute_request_hash",
    "flatten_args",
]

# Bytes arguments are split into 31-byte words so each fits the field.
_CHUNK = 31


@dataclass
class SignedRequest:
    """One inbound request as received by the host."""
    caller: str
    entrypoint: str
    args: tuple = ()
    nonce: int = 0
    signature: tuple = ()


def flatten_args(args) -> list[int]:
    """Encode request arguments as field elements.

    ints and hex strings map to themselves, bytes become
    ``[len, *31-byte words]`` and sequences become ``[len, *items]``.
    """
    out: list[int] = []
    for arg in args:
        if isinstance(arg, (bytes, bytearray)):
            out.append(len(arg))
            for i in range(0, len(arg), _CHUNK):
                out.append(int.from_bytes(arg[i:i + _CHUNK], "big"))
        elif isinstance(arg, (list, tuple)):
            out.append(len(arg))
            out.extend(flatten_args(arg))
        else:
            out.append(to_field_element(arg))
    return out


def compute_request_hash(
    vault_address: str,
    caller: str,
    entrypoint: str,
    args,
    nonce: int,
) -> int:
    """Hash a caller signs to authorise one request on one vault."""
    elements = [
        int(normalize_address(vault_address), 16),
        int(normalize_address(caller), 16),
        get_selector_from_name(entrypoint),
        nonce,
        *flatten_args(args),
    ]
    return hash_elements(elements)


class AccountHost:
    """Sequential request processor wrapping a MultisigAccount."""

    def __init__(
        self,
        account: MultisigAccount,
        address: str = "0x1",
        store: VaultStore | None = None,
        nonces: dict[str, int] | None = None,
    ):
        self.account = account
        self.address = normalize_address(address)
        self.store = store
        self.nonces: dict[str, int] = dict(nonces or {})

    @property
    def declared_classes(self) -> set[int]:
        return self.account.state.declared_classes

    @property
    def deployments(self) -> list[Deployment]:
        return self.account.state.deployments

    # ── nonces ───────────────────────────────────────────────────

    def get_nonce(self, caller: str) -> int:
        return self.nonces.get(normalize_address(caller), 0)

    def request_hash(self, caller: str, entrypoint: str, args, nonce: int) -> int:
        return compute_request_hash(self.address, caller, entrypoint, args, nonce)

    def _context(self, request: SignedRequest) -> RequestContext:
        try:
            caller = normalize_address(request.caller)
            tx_hash = self.request_hash(caller, request.entrypoint, request.args, request.nonce)
        except (TypeError, ValueError) as exc:
            raise InvalidCalldata(str(exc)) from exc
        expected = self.nonces.get(caller, 0)
        if request.nonce != expected:
            raise InvalidNonce(f"Expected nonce {expected} for {caller}, got {request.nonce}")
        return RequestContext(caller=caller, tx_hash=tx_hash, signature=tuple(request.signature))

    def _persist(self, caller: str) -> Callable[[VaultState], None]:
        """Commit hook: store the request's changes, then advance the nonce."""
        def on_commit(state: VaultState) -> None:
            nonces = dict(self.nonces)
            nonces[caller] = nonces.get(caller, 0) + 1
            if self.store is not None:
                self.store.save_changes(state, nonces)
            self.nonces = nonces
        return on_commit

    # ── requests ─────────────────────────────────────────────────

    def invoke(self, request: SignedRequest) -> Any:
        """Authenticate and run one entry point.  Returns its result."""
        entrypoint = request.entrypoint
        if entrypoint not in ENTRYPOINTS:
            raise InvalidCalldata(f"Unknown entry point {entrypoint!r}")
        try:
            ctx = self._context(request)
            with self.account.atomic(entrypoint, on_commit=self._persist(ctx.caller)):
                if entrypoint == "set_public_key":
                    if len(request.args) != 1:
                        raise InvalidCalldata("set_public_key takes exactly one argument")
                    self.account.validate_public_key(ctx, *request.args)
                elif entrypoint in SIGNED_ENTRYPOINTS:
                    self.account.validate_transaction(
                        ctx,
                        int(self.address, 16),
                        get_selector_from_name(entrypoint),
                        flatten_args(request.args),
                    )
                result = getattr(self.account, entrypoint)(ctx, *request.args)
        except VaultError as exc:
            logger.warning(
                f"Rejected request: {exc.message}",
                extra={"entrypoint": entrypoint, "caller": request.caller, "code": exc.code},
            )
            raise
        return result

    def declare(self, request: SignedRequest, class_hash: int) -> str:
        request = SignedRequest(request.caller, DECLARE, (class_hash,), request.nonce,
                                request.signature)
        try:
            ctx = self._context(request)
            with self.account.atomic(DECLARE, on_commit=self._persist(ctx.caller)):
                result = self.account.validate_declare(ctx, class_hash)
                self.account.record_declaration(class_hash)
        except VaultError as exc:
            logger.warning(
                f"Rejected declare: {exc.message}",
                extra={"entrypoint": DECLARE, "caller": request.caller, "code": exc.code},
            )
            raise
        logger.info(f"Class {hex(class_hash)} declared", extra={"caller": ctx.caller})
        return result

    def deploy(
        self, request: SignedRequest, class_hash: int, salt: int, public_key: bytes,
    ) -> Deployment:
        request = SignedRequest(request.caller, DEPLOY, (class_hash, salt, public_key),
                                request.nonce, request.signature)
        try:
            ctx = self._context(request)
            with self.account.atomic(DEPLOY, on_commit=self._persist(ctx.caller)):
                self.account.validate_deployment(ctx, class_hash, salt, public_key)
                deployment = Deployment(class_hash, salt, bytes(public_key), ctx.caller)
                self.account.record_deployment(deployment)
        except VaultError as exc:
            logger.warning(
                f"Rejected deploy: {exc.message}",
                extra={"entrypoint": DEPLOY, "caller": request.caller, "code": exc.code},
            )
            raise
        logger.info(
            f"Class {hex(class_hash)} deployed (salt {hex(salt)})",
            extra={"caller": ctx.caller},
        )
        return deployment
