"""
Tests for quorumvault_core.ledger — call records, ids and confirmations.
"""

import unittest

from quorumvault_core.errors import (
    AlreadyConfirmed,
    AlreadyExecuted,
    ThresholdNotMet,
    TxNotFound,
)
from quorumvault_core.ledger import CallRecord, ConfirmationTracker, TransactionLedger


class TestCallRecord(unittest.TestCase):

    def test_status_progression(self):
        rec = CallRecord(tx_id=1, target=0x10, selector=0x20)
        self.assertEqual(rec.status(2), "open")
        rec.confirmations = 2
        self.assertEqual(rec.status(2), "executable")
        self.assertTrue(rec.is_executable(2))
        rec.executed = True
        self.assertEqual(rec.status(2), "executed")
        self.assertFalse(rec.is_executable(2))

    def test_to_dict_hex_fields(self):
        rec = CallRecord(tx_id=3, target=255, selector=16, payload=(1, 2))
        d = rec.to_dict()
        self.assertEqual(d["target"], "0xff")
        self.assertEqual(d["selector"], "0x10")
        self.assertEqual(d["payload"], ["0x1", "0x2"])
        self.assertFalse(d["executed"])


class TestTransactionLedger(unittest.TestCase):

    def setUp(self):
        self.ledger = TransactionLedger()

    def test_ids_are_dense_from_one(self):
        ids = [self.ledger.append(0x1, 0x2, ()).tx_id for _ in range(3)]
        self.assertEqual(ids, [1, 2, 3])
        self.assertEqual(self.ledger.last_tx_id, 3)
        self.assertEqual(len(self.ledger), 3)

    def test_new_record_is_fresh(self):
        rec = self.ledger.append(0x1, 0x2, [5, 6])
        self.assertEqual(rec.confirmations, 0)
        self.assertFalse(rec.executed)
        self.assertEqual(rec.payload, (5, 6))

    def test_unknown_ids(self):
        self.ledger.append(0x1, 0x2, ())
        for bad in (0, 2, -1, "1"):
            with self.assertRaises(TxNotFound):
                self.ledger.get(bad)
        self.assertFalse(self.ledger.exists(0))
        self.assertTrue(self.ledger.exists(1))

    def test_check_executable(self):
        self.ledger.append(0x1, 0x2, ())
        with self.assertRaises(ThresholdNotMet):
            self.ledger.check_executable(1, 2)
        self.ledger.add_confirmation(1)
        self.ledger.add_confirmation(1)
        self.assertEqual(self.ledger.check_executable(1, 2).tx_id, 1)

    def test_already_executed_reported_first(self):
        self.ledger.append(0x1, 0x2, ())
        self.ledger.records[1].executed = True
        with self.assertRaises(AlreadyExecuted):
            self.ledger.check_executable(1, 5)

    def test_mark_executed_once(self):
        self.ledger.append(0x1, 0x2, ())
        self.ledger.mark_executed(1)
        with self.assertRaises(AlreadyExecuted):
            self.ledger.mark_executed(1)

    def test_pending(self):
        self.ledger.append(0x1, 0x2, ())
        self.ledger.append(0x1, 0x2, ())
        self.ledger.mark_executed(1)
        self.assertEqual([r.tx_id for r in self.ledger.pending()], [2])


class TestConfirmationTracker(unittest.TestCase):

    def test_record_once(self):
        tracker = ConfirmationTracker()
        tracker.record("0xa", 1)
        self.assertTrue(tracker.has_confirmed("0xa", 1))
        self.assertFalse(tracker.has_confirmed("0xa", 2))
        with self.assertRaises(AlreadyConfirmed):
            tracker.record("0xa", 1)

    def test_counts_and_confirmers(self):
        tracker = ConfirmationTracker()
        tracker.record("0xb", 1)
        tracker.record("0xa", 1)
        tracker.record("0xa", 2)
        self.assertEqual(tracker.count_for(1), 2)
        self.assertEqual(tracker.confirmers(1), ["0xa", "0xb"])

    def test_load_indexes_by_tx(self):
        tracker = ConfirmationTracker()
        tracker.load([("0xa", 1), ("0xb", 1), ("0xa", 2)])
        self.assertEqual(tracker.count_for(1), 2)
        self.assertTrue(tracker.has_confirmed("0xa", 2))
        self.assertEqual(tracker.changes(), [])


class TestJournal(unittest.TestCase):

    def setUp(self):
        self.ledger = TransactionLedger()
        self.ledger.append(0x10, 0x20, ())
        self.ledger.add_confirmation(1)

    def test_rollback_drops_appended_records(self):
        self.ledger.begin()
        self.ledger.append(0x10, 0x21, ())
        self.ledger.append(0x10, 0x22, ())
        self.assertEqual(set(self.ledger.changes()), {2, 3})
        self.ledger.rollback()
        self.assertEqual(self.ledger.last_tx_id, 1)
        self.assertEqual(list(self.ledger.records), [1])
        self.assertEqual(self.ledger.append(0x10, 0x23, ()).tx_id, 2)

    def test_rollback_restores_touched_records(self):
        self.ledger.begin()
        self.ledger.add_confirmation(1)
        self.ledger.mark_executed(1)
        before = self.ledger.changes()[1]
        self.assertEqual((before.confirmations, before.executed), (1, False))
        self.ledger.rollback()
        record = self.ledger.get(1)
        self.assertEqual(record.confirmations, 1)
        self.assertFalse(record.executed)

    def test_commit_keeps_changes_and_clears_journal(self):
        self.ledger.begin()
        self.ledger.add_confirmation(1)
        self.ledger.commit()
        self.assertEqual(self.ledger.changes(), {})
        self.ledger.rollback()
        self.assertEqual(self.ledger.get(1).confirmations, 2)

    def test_touch_outside_request_is_not_journaled(self):
        self.ledger.touch(1).confirmations = 3
        self.assertEqual(self.ledger.changes(), {})

    def test_tracker_rollback(self):
        tracker = ConfirmationTracker()
        tracker.record("0xa", 1)
        tracker.begin()
        tracker.record("0xb", 1)
        tracker.record("0xb", 2)
        self.assertEqual(tracker.changes(), [("0xb", 1), ("0xb", 2)])
        tracker.rollback()
        self.assertEqual(tracker.confirmers(1), ["0xa"])
        self.assertEqual(tracker.count_for(2), 0)
        self.assertNotIn(2, tracker.by_tx)
