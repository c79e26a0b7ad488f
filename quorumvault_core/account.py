"""
Multisig account for QuorumVault.

Combines the owner and public-key registries, the transaction ledger and
the confirmation tracker into one owned state object (``VaultState``) and
exposes the account's entry points:

  set_public_key       owner declares its own verification key
  submit_transaction   owner proposes a call (target, selector, payload)
  confirm_transaction  owner adds its confirmation, at most once per tx
  execute_transaction  anyone dispatches a call once it has quorum

plus the authentication hooks used by the hosting layer: declare,
deployment and transaction share one signature check, and key changes
are checked against the key already on file (or, for a first key, the
new key itself, which must derive to the caller's address).

Every mutating entry point is atomic: the state journals what a request
touches and reverts it if anything raises, including the execution
gateway and the host's commit hook (persistence).  Notifications are only
published after the request commits.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Sequence

from quorumvault_core.crypto_utils import derive_address, normalize_address, to_field_element
from quorumvault_core.errors import (
    DispatchFailed,
    InvalidCalldata,
    InvalidPublicKey,
    InvalidThreshold,
    InvariantViolation,
)
from quorumvault_core.events import EventKind, EventLog, EventSink, VaultEvent
from quorumvault_core.gateway import ExecutionGateway
from quorumvault_core.invariants import InvariantChecker
from quorumvault_core.ledger import CallRecord, ConfirmationTracker, TransactionLedger
from quorumvault_core.owners import OwnerRegistry, PublicKeyRegistry
from quorumvault_core.signature import validate_signature

logger = logging.getLogger("quorumvault_account")

MIN_THRESHOLD = 1


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, and what the host says they signed."""
    caller: str
    tx_hash: int = 0
    signature: tuple[int, ...] = ()


@dataclass
class Deployment:
    class_hash: int
    salt: int
    public_key: bytes
    deployer: str

    def to_dict(self) -> dict:
        return {
            "class_hash": hex(self.class_hash),
            "salt": hex(self.salt),
            "public_key": self.public_key.hex(),
            "deployer": self.deployer,
        }


class VaultState:
    """All persistent vault state, initialised once."""

    def __init__(self, owners: OwnerRegistry, threshold: int):
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise InvalidThreshold(f"Threshold must be an integer, got {threshold!r}")
        if not MIN_THRESHOLD <= threshold <= owners.num_owners:
            raise InvalidThreshold(
                f"Threshold {threshold} outside {MIN_THRESHOLD}..{owners.num_owners}"
            )
        self.owners = owners
        self.threshold = threshold
        self.public_keys = PublicKeyRegistry()
        self.ledger = TransactionLedger()
        self.tracker = ConfirmationTracker()
        self.declared_classes: set[int] = set()
        self.deployments: list[Deployment] = []
        self._new_declarations: list[int] | None = None
        self._saved_deployments = 0

    @classmethod
    def initialize(cls, owners: Iterable[str], threshold: int) -> VaultState:
        return cls(OwnerRegistry(owners), threshold)

    # ── request journal ──────────────────────────────────────────

    def begin(self) -> None:
        self.public_keys.begin()
        self.ledger.begin()
        self.tracker.begin()
        self._new_declarations = []
        self._saved_deployments = len(self.deployments)

    def commit(self) -> None:
        self.public_keys.commit()
        self.ledger.commit()
        self.tracker.commit()
        self._new_declarations = None

    def rollback(self) -> None:
        self.public_keys.rollback()
        self.ledger.rollback()
        self.tracker.rollback()
        for class_hash in self._new_declarations or ():
            self.declared_classes.discard(class_hash)
        del self.deployments[self._saved_deployments:]
        self._new_declarations = None

    def new_declarations(self) -> list[int]:
        return list(self._new_declarations or ())

    def new_deployments(self) -> list[tuple[int, Deployment]]:
        """(position, deployment) pairs added since ``begin``."""
        if self._new_declarations is None:
            return []
        start = self._saved_deployments
        return list(enumerate(self.deployments[start:], start))

    # ── declarations ─────────────────────────────────────────────

    def add_declaration(self, class_hash: int) -> None:
        if class_hash in self.declared_classes:
            return
        self.declared_classes.add(class_hash)
        if self._new_declarations is not None:
            self._new_declarations.append(class_hash)

    def add_deployment(self, deployment: Deployment) -> None:
        self.deployments.append(deployment)


class MultisigAccount:
    """M-of-N account that dispatches calls once enough owners confirm."""

    def __init__(
        self,
        owners: Iterable[str],
        threshold: int,
        gateway: ExecutionGateway | None = None,
        sink: EventSink | None = None,
    ):
        self.state = VaultState.initialize(owners, threshold)
        self.gateway = gateway
        self.sink = sink if sink is not None else EventLog()
        self._checker = InvariantChecker()
        self._pending_events: list[VaultEvent] = []
        self._in_request = False
        logger.info(
            f"Vault initialised: {threshold}-of-{self.state.owners.num_owners}"
        )

    @classmethod
    def from_state(
        cls,
        state: VaultState,
        gateway: ExecutionGateway | None = None,
        sink: EventSink | None = None,
    ) -> MultisigAccount:
        """Wrap previously persisted state (see storage.VaultStore)."""
        account = cls.__new__(cls)
        account.state = state
        account.gateway = gateway
        account.sink = sink if sink is not None else EventLog()
        account._checker = InvariantChecker()
        account._pending_events = []
        account._in_request = False
        return account

    # ── request atomicity ────────────────────────────────────────

    @contextmanager
    def _request(
        self,
        name: str,
        on_commit: Callable[[VaultState], None] | None = None,
    ) -> Iterator[None]:
        if self._in_request:
            # nested inside a host request: the outer scope commits
            yield
            return

        state = self.state
        state.begin()
        self._pending_events = []
        self._checker.capture(state)
        self._in_request = True
        try:
            yield
            ok, msg = self._checker.verify(state)
            if not ok:
                raise InvariantViolation(f"{name}: {msg}")
            if on_commit is not None:
                on_commit(state)
        except BaseException:
            state.rollback()
            self._pending_events = []
            raise
        finally:
            self._in_request = False
        state.commit()
        events, self._pending_events = self._pending_events, []
        for event in events:
            self.sink.publish(event)

    def atomic(self, name: str, on_commit: Callable[[VaultState], None] | None = None):
        """Run several account calls as one request.

        *on_commit* runs after the invariant checks and before the journal
        is cleared; if it raises, the whole request is rolled back.
        """
        return self._request(name, on_commit)

    def _emit(self, kind: EventKind, account: str, tx_id: int) -> None:
        self._pending_events.append(VaultEvent(kind, account, tx_id))

    @staticmethod
    def _calldata(target, selector, payload: Sequence) -> tuple[int, int, tuple[int, ...]]:
        try:
            return (
                to_field_element(target),
                to_field_element(selector),
                tuple(to_field_element(x) for x in payload),
            )
        except (TypeError, ValueError) as exc:
            raise InvalidCalldata(str(exc)) from exc

    # ── writes ───────────────────────────────────────────────────

    def set_public_key(self, ctx: RequestContext, public_key: bytes) -> None:
        with self._request("set_public_key"):
            owner = self.state.owners.assert_owner(ctx.caller)
            self.state.public_keys.set_public_key(owner, public_key)
        logger.info("Public key set", extra={"caller": owner})

    def submit_transaction(
        self,
        ctx: RequestContext,
        target: int,
        selector: int,
        payload: Sequence[int] = (),
    ) -> int:
        """Store a new call with zero confirmations and return its id."""
        with self._request("submit_transaction"):
            owner = self.state.owners.assert_owner(ctx.caller)
            self.state.public_keys.assert_has_public_key(owner)
            target, selector, payload = self._calldata(target, selector, payload)
            record = self.state.ledger.append(target, selector, payload)
            self._emit(EventKind.SUBMITTED, owner, record.tx_id)
        logger.info(
            f"Submitted call to {hex(target)}",
            extra={"caller": owner, "tx_id": record.tx_id},
        )
        return record.tx_id

    def confirm_transaction(self, ctx: RequestContext, tx_id: int) -> int:
        """Add the caller's confirmation; returns the new confirmation count."""
        with self._request("confirm_transaction"):
            owner = self.state.owners.assert_owner(ctx.caller)
            self.state.ledger.get(tx_id)
            self.state.public_keys.assert_has_public_key(owner)
            self.state.tracker.record(owner, tx_id)
            count = self.state.ledger.add_confirmation(tx_id)
            self._emit(EventKind.CONFIRMED, owner, tx_id)
        logger.info(
            f"Confirmed ({count}/{self.state.threshold})",
            extra={"caller": owner, "tx_id": tx_id},
        )
        return count

    def execute_transaction(self, ctx: RequestContext, tx_id: int) -> bytes:
        """Dispatch a call that has reached quorum.  Any caller may trigger it."""
        with self._request("execute_transaction"):
            record = self.state.ledger.check_executable(tx_id, self.state.threshold)
            if self.gateway is None:
                raise DispatchFailed("No execution gateway configured")
            result = self.gateway.dispatch(record.target, record.selector, record.payload)
            self.state.ledger.mark_executed(tx_id)
            self._emit(EventKind.EXECUTED, ctx.caller, tx_id)
        logger.info("Executed", extra={"caller": ctx.caller, "tx_id": tx_id})
        return result

    def record_declaration(self, class_hash: int) -> None:
        with self._request("declare"):
            self.state.add_declaration(class_hash)

    def record_deployment(self, deployment: Deployment) -> None:
        with self._request("deploy"):
            self.state.add_deployment(deployment)

    # ── authentication hooks ─────────────────────────────────────

    def _validate_caller(self, ctx: RequestContext) -> str:
        owner = self.state.owners.assert_owner(ctx.caller)
        public_key = self.state.public_keys.assert_has_public_key(owner)
        return validate_signature(ctx.tx_hash, public_key, ctx.signature)

    def validate_declare(self, ctx: RequestContext, class_hash: int) -> str:
        return self._validate_caller(ctx)

    def validate_deployment(
        self, ctx: RequestContext, class_hash: int, salt: int, public_key: bytes,
    ) -> str:
        return self._validate_caller(ctx)

    def validate_transaction(
        self, ctx: RequestContext, target: int, selector: int, payload: Sequence[int] = (),
    ) -> str:
        return self._validate_caller(ctx)

    def validate_public_key(self, ctx: RequestContext, public_key: bytes) -> str:
        """Authenticate a key change.

        A rotation must be signed with the key currently on file.  A first
        key must derive to the caller's address and sign its own request,
        proving the caller holds it.
        """
        owner = self.state.owners.assert_owner(ctx.caller)
        current = self.state.public_keys.get_public_key(owner)
        if current:
            return validate_signature(ctx.tx_hash, current, ctx.signature)
        try:
            derived = normalize_address(derive_address(public_key))
        except (TypeError, ValueError) as exc:
            raise InvalidPublicKey(str(exc)) from exc
        if derived != owner:
            raise InvalidPublicKey(f"Key derives to {derived}, not to caller {owner}")
        return validate_signature(ctx.tx_hash, public_key, ctx.signature)

    # ── reads ────────────────────────────────────────────────────

    def get_confirmations(self, tx_id: int) -> int:
        return self.state.ledger.get(tx_id).confirmations

    def get_num_owners(self) -> int:
        return self.state.owners.num_owners

    def get_threshold(self) -> int:
        return self.state.threshold

    def get_owners(self) -> list[str]:
        return self.state.owners.to_list()

    def get_owner_public_key(self, address: str) -> bytes:
        owner = self.state.owners.assert_owner(address)
        return self.state.public_keys.get_public_key(owner)

    def get_last_tx_id(self) -> int:
        return self.state.ledger.last_tx_id

    def get_transaction(self, tx_id: int) -> CallRecord:
        """A copy of the stored record; mutating it does not touch the vault."""
        return self.state.ledger.get(tx_id).copy()

    def has_confirmed(self, owner: str, tx_id: int) -> bool:
        if not self.state.owners.is_owner(owner):
            return False
        canonical = self.state.owners.assert_owner(owner)
        return self.state.tracker.has_confirmed(canonical, tx_id)

    def is_executable(self, tx_id: int) -> bool:
        return self.state.ledger.get(tx_id).is_executable(self.state.threshold)

    def get_state_summary(self) -> dict:
        ledger = self.state.ledger
        pending = len(ledger.pending())
        return {
            "num_owners": self.state.owners.num_owners,
            "threshold": self.state.threshold,
            "last_tx_id": ledger.last_tx_id,
            "pending": pending,
            "executed": ledger.last_tx_id - pending,
            "owners_with_keys": sum(
                1 for o in self.state.owners if self.state.public_keys.has_public_key(o)
            ),
            "declared_classes": len(self.state.declared_classes),
            "deployments": len(self.state.deployments),
        }
