"""
Transaction ledger and confirmation tracker for QuorumVault.

Each submitted call is stored as a CallRecord under a transaction id drawn
from a dense 1, 2, 3, ... sequence.  A record moves through

    Open -> Executable -> Executed

where Open and Executable are the same stored state: whether a record is
executable is decided at read time by comparing its confirmation count
with the vault threshold.  Records are never deleted.

The ConfirmationTracker remembers which (owner, tx_id) pairs have
confirmed so a confirmation is counted at most once.  There is no
revocation.

Both keep a per-request undo journal (``begin`` / ``commit`` / ``rollback``)
so a failed request only reverts what it touched.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from quorumvault_core.errors import (
    AlreadyConfirmed,
    AlreadyExecuted,
    ThresholdNotMet,
    TxNotFound,
)


@dataclass
class CallRecord:
    """A delegated call awaiting (or past) execution."""
    tx_id: int
    target: int           # field element identifying the callee
    selector: int         # entry-point selector on the callee
    payload: tuple[int, ...] = field(default_factory=tuple)
    confirmations: int = 0
    executed: bool = False

    def copy(self) -> CallRecord:
        return dataclasses.replace(self)

    def is_executable(self, threshold: int) -> bool:
        return not self.executed and self.confirmations >= threshold

    def status(self, threshold: int) -> str:
        if self.executed:
            return "executed"
        if self.confirmations >= threshold:
            return "executable"
        return "open"

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "target": hex(self.target),
            "selector": hex(self.selector),
            "payload": [hex(x) for x in self.payload],
            "confirmations": self.confirmations,
            "executed": self.executed,
        }


class TransactionLedger:
    """Stores call records keyed by monotonically increasing id.

    Between ``begin`` and ``commit`` / ``rollback`` the ledger keeps an undo
    journal: the prior value of every record touched and the id watermark,
    so a failed request can be reverted without copying the whole ledger.
    """

    def __init__(self):
        self.records: dict[int, CallRecord] = {}
        self.last_tx_id: int = 0
        self._undo: dict[int, CallRecord] | None = None
        self._saved_last_tx_id: int = 0

    # ── request journal ──────────────────────────────────────────

    def begin(self) -> None:
        self._undo = {}
        self._saved_last_tx_id = self.last_tx_id

    def commit(self) -> None:
        self._undo = None

    def rollback(self) -> None:
        if self._undo is None:
            return
        for tx_id in range(self._saved_last_tx_id + 1, self.last_tx_id + 1):
            self.records.pop(tx_id, None)
        self.last_tx_id = self._saved_last_tx_id
        self.records.update(self._undo)
        self._undo = None

    def changes(self) -> dict[int, CallRecord | None]:
        """tx_id -> value before the request (None for records appended since ``begin``)."""
        if self._undo is None:
            return {}
        out: dict[int, CallRecord | None] = dict(self._undo)
        for tx_id in range(self._saved_last_tx_id + 1, self.last_tx_id + 1):
            out[tx_id] = None
        return out

    def touch(self, tx_id: int) -> CallRecord:
        """Return record *tx_id* for in-place mutation, journaling its prior value."""
        record = self.get(tx_id)
        if (self._undo is not None
                and tx_id <= self._saved_last_tx_id
                and tx_id not in self._undo):
            self._undo[tx_id] = record.copy()
        return record

    # ── records ──────────────────────────────────────────────────

    def append(self, target: int, selector: int, payload: tuple[int, ...]) -> CallRecord:
        """Allocate the next id and store a fresh record with 0 confirmations."""
        tx_id = self.last_tx_id + 1
        record = CallRecord(
            tx_id=tx_id,
            target=target,
            selector=selector,
            payload=tuple(payload),
        )
        self.records[tx_id] = record
        self.last_tx_id = tx_id
        return record

    def exists(self, tx_id: int) -> bool:
        return 1 <= tx_id <= self.last_tx_id

    def get(self, tx_id: int) -> CallRecord:
        if isinstance(tx_id, bool) or not isinstance(tx_id, int) or not self.exists(tx_id):
            raise TxNotFound(f"Transaction {tx_id} does not exist")
        return self.records[tx_id]

    def add_confirmation(self, tx_id: int) -> int:
        record = self.touch(tx_id)
        record.confirmations += 1
        return record.confirmations

    def check_executable(self, tx_id: int, threshold: int) -> CallRecord:
        """Return the record if it may be dispatched, else raise.

        Already-executed is checked before the threshold so a replayed
        execute fails the same way whatever the confirmation count.
        """
        record = self.get(tx_id)
        if record.executed:
            raise AlreadyExecuted(f"Transaction {tx_id} already executed")
        if record.confirmations < threshold:
            raise ThresholdNotMet(
                f"Transaction {tx_id} has {record.confirmations}/{threshold} confirmations"
            )
        return record

    def mark_executed(self, tx_id: int) -> None:
        record = self.touch(tx_id)
        if record.executed:
            raise AlreadyExecuted(f"Transaction {tx_id} already executed")
        record.executed = True

    def pending(self) -> list[CallRecord]:
        return [r for r in self.records.values() if not r.executed]

    def __len__(self) -> int:
        return self.last_tx_id


class ConfirmationTracker:
    """(owner, tx_id) -> has confirmed, indexed per transaction."""

    def __init__(self):
        self.confirmed: set[tuple[str, int]] = set()
        self.by_tx: dict[int, set[str]] = {}
        self._added: list[tuple[str, int]] | None = None

    # ── request journal ──────────────────────────────────────────

    def begin(self) -> None:
        self._added = []

    def commit(self) -> None:
        self._added = None

    def rollback(self) -> None:
        for owner, tx_id in self._added or ():
            self._discard(owner, tx_id)
        self._added = None

    def changes(self) -> list[tuple[str, int]]:
        """(owner, tx_id) pairs recorded since ``begin``."""
        return list(self._added or ())

    # ── confirmations ────────────────────────────────────────────

    def load(self, pairs) -> None:
        """Bulk-insert persisted pairs (no duplicate check, no journal)."""
        for owner, tx_id in pairs:
            self.confirmed.add((owner, tx_id))
            self.by_tx.setdefault(tx_id, set()).add(owner)

    def has_confirmed(self, owner: str, tx_id: int) -> bool:
        return (owner, tx_id) in self.confirmed

    def record(self, owner: str, tx_id: int) -> None:
        if (owner, tx_id) in self.confirmed:
            raise AlreadyConfirmed(f"{owner} already confirmed transaction {tx_id}")
        self.confirmed.add((owner, tx_id))
        self.by_tx.setdefault(tx_id, set()).add(owner)
        if self._added is not None:
            self._added.append((owner, tx_id))

    def _discard(self, owner: str, tx_id: int) -> None:
        self.confirmed.discard((owner, tx_id))
        owners = self.by_tx.get(tx_id)
        if owners is not None:
            owners.discard(owner)
            if not owners:
                del self.by_tx[tx_id]

    def count_for(self, tx_id: int) -> int:
        return len(self.by_tx.get(tx_id, ()))

    def confirmers(self, tx_id: int) -> list[str]:
        return sorted(self.by_tx.get(tx_id, ()))
