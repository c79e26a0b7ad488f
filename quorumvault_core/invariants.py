"""
Post-request invariant checks for QuorumVault.

After every mutating request the account verifies:
  - Owner count and threshold are within bounds and unchanged
  - Transaction ids stay dense (1..last_tx_id) and last_tx_id never shrinks
  - Each touched record's confirmation count equals its tracker entries
  - Confirmation counts never decrease
  - The executed flag never goes back to False
  - Only records that reached the threshold are executed

Per-request checks only look at the records the request touched (taken
from the ledger and tracker journals), so their cost does not grow with
the vault's history.  ``verify_state`` runs the same rules over every
record and is used when loading persisted state.

If any invariant fails, the request is rolled back and rejected.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class StateSnapshot:
    """Key vault fields captured before a request."""
    num_owners: int = 0
    threshold: int = 0
    last_tx_id: int = 0


class InvariantChecker:
    """
    Captures a pre-request snapshot of the vault state and validates
    invariants after the request is applied.
    """

    def __init__(self):
        self._snapshot: StateSnapshot | None = None

    def capture(self, state) -> None:
        self._snapshot = StateSnapshot(
            num_owners=state.owners.num_owners,
            threshold=state.threshold,
            last_tx_id=state.ledger.last_tx_id,
        )

    def verify(self, state) -> tuple[bool, str]:
        """
        Verify all invariants against the current vault state.
        Returns (passed, error_message).
        """
        errors: list[str] = []

        ok, msg = check_configuration(state)
        if not ok:
            errors.append(msg)

        if self._snapshot is not None:
            for check in (self._check_configuration_fixed, self._check_ids_appended):
                ok, msg = check(state)
                if not ok:
                    errors.append(msg)

        before = state.ledger.changes()
        touched = set(before) | {tx_id for _, tx_id in state.tracker.changes()}
        for tx_id in sorted(touched):
            ok, msg = check_record(state, tx_id, before.get(tx_id))
            if not ok:
                errors.append(msg)

        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_configuration_fixed(self, state) -> tuple[bool, str]:
        snap = self._snapshot
        if state.owners.num_owners != snap.num_owners or state.threshold != snap.threshold:
            return (False,
                    f"Configuration changed: {snap.threshold}-of-{snap.num_owners} -> "
                    f"{state.threshold}-of-{state.owners.num_owners}")
        return True, ""

    def _check_ids_appended(self, state) -> tuple[bool, str]:
        old, new = self._snapshot.last_tx_id, state.ledger.last_tx_id
        if new < old:
            return False, f"last_tx_id decreased: {old} -> {new}"
        if len(state.ledger.records) != new:
            return False, f"Transaction ids are not dense 1..{new}"
        missing = [i for i in range(old + 1, new + 1) if i not in state.ledger.records]
        if missing:
            return False, f"Transaction ids missing: {missing}"
        return True, ""


# ── record checks ────────────────────────────────────────────────

def check_record(state, tx_id: int, before=None) -> tuple[bool, str]:
    """Check one record, and against its pre-request copy when given."""
    record = state.ledger.records.get(tx_id)
    if record is None:
        return False, f"Transaction {tx_id} disappeared or was never stored"

    confirmers = state.tracker.by_tx.get(tx_id, set())
    for owner in confirmers:
        if not state.owners.is_owner(owner):
            return False, f"Confirmation recorded for non-owner {owner}"
    if record.confirmations != len(confirmers):
        return (False,
                f"Confirmation count mismatch on {tx_id}: record says "
                f"{record.confirmations}, tracker has {len(confirmers)}")
    if record.executed and record.confirmations < state.threshold:
        return (False,
                f"Transaction {tx_id} executed with {record.confirmations}/"
                f"{state.threshold} confirmations")

    if before is not None:
        if record.confirmations < before.confirmations:
            return (False,
                    f"Confirmations decreased on {tx_id}: {before.confirmations} -> "
                    f"{record.confirmations}")
        if before.executed and not record.executed:
            return False, f"Executed flag reverted on {tx_id}"
    return True, ""


# ── whole-state checks (run after restoring from storage) ────────

def check_configuration(state) -> tuple[bool, str]:
    n = state.owners.num_owners
    if n < 2:
        return False, f"Too few owners: {n}"
    if not 1 <= state.threshold <= n:
        return False, f"Threshold {state.threshold} outside 1..{n}"
    return True, ""


def check_dense_ids(state) -> tuple[bool, str]:
    last = state.ledger.last_tx_id
    if set(state.ledger.records) != set(range(1, last + 1)):
        return False, f"Transaction ids are not dense 1..{last}"
    return True, ""


def verify_state(state) -> tuple[bool, str]:
    """Run every rule over the whole state; used when loading persisted state."""
    for check in (check_configuration, check_dense_ids):
        ok, msg = check(state)
        if not ok:
            return False, msg
    stray = set(state.tracker.by_tx) - set(state.ledger.records)
    if stray:
        return False, f"Confirmations for unknown transactions: {sorted(stray)}"
    for tx_id in state.ledger.records:
        ok, msg = check_record(state, tx_id)
        if not ok:
            return False, msg
    return True, ""
