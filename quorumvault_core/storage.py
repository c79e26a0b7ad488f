"""
SQLite-based persistence layer for QuorumVault state.

Stores the fixed vault configuration, owner public keys, call records,
confirmations and host nonces so that a vault can recover its state after
a restart.  Field elements exceed SQLite's 64-bit integers and are stored
as hex text.

Usage:
    store = VaultStore("data/quorumvault.db")
    store.snapshot_state(account.state, host.nonces)
    ...
    restored = store.restore_state()
    if restored is not None:
        state, nonces = restored
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from quorumvault_core.invariants import verify_state
from quorumvault_core.ledger import CallRecord

logger = logging.getLogger("quorumvault_storage")


class VaultStore:
    """Thin SQLite wrapper for persisting vault state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/quorumvault.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS vault_config (
                id         INTEGER PRIMARY KEY CHECK (id = 1),
                threshold  INTEGER NOT NULL,
                last_tx_id INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS owners (
                position INTEGER PRIMARY KEY,
                address  TEXT NOT NULL UNIQUE
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS public_keys (
                address    TEXT PRIMARY KEY,
                public_key TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS call_records (
                tx_id         INTEGER PRIMARY KEY,
                target        TEXT NOT NULL,
                selector      TEXT NOT NULL,
                payload_json  TEXT NOT NULL,
                confirmations INTEGER NOT NULL DEFAULT 0,
                executed      INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS confirmations (
                owner TEXT NOT NULL,
                tx_id INTEGER NOT NULL,
                PRIMARY KEY (owner, tx_id)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS nonces (
                caller TEXT PRIMARY KEY,
                nonce  INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS declared_classes (
                class_hash TEXT PRIMARY KEY
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS deployments (
                position   INTEGER PRIMARY KEY,
                class_hash TEXT NOT NULL,
                salt       TEXT NOT NULL,
                public_key TEXT NOT NULL,
                deployer   TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade QuorumVault."
            )

    # ── call records ─────────────────────────────────────────────

    @staticmethod
    def _record_row(record: CallRecord) -> tuple:
        return (
            record.tx_id,
            hex(record.target),
            hex(record.selector),
            json.dumps([hex(x) for x in record.payload]),
            record.confirmations,
            int(record.executed),
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CallRecord:
        return CallRecord(
            tx_id=row["tx_id"],
            target=int(row["target"], 16),
            selector=int(row["selector"], 16),
            payload=tuple(int(x, 16) for x in json.loads(row["payload_json"])),
            confirmations=row["confirmations"],
            executed=bool(row["executed"]),
        )

    def load_call_record(self, tx_id: int) -> CallRecord | None:
        row = self._conn.execute(
            "SELECT * FROM call_records WHERE tx_id = ?", (tx_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def load_call_records(self) -> list[CallRecord]:
        rows = self._conn.execute(
            "SELECT * FROM call_records ORDER BY tx_id"
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    # ── owners / keys / nonces ───────────────────────────────────

    def load_owners(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT address FROM owners ORDER BY position"
        ).fetchall()
        return [r["address"] for r in rows]

    def load_public_keys(self) -> dict[str, bytes]:
        rows = self._conn.execute("SELECT * FROM public_keys").fetchall()
        return {r["address"]: bytes.fromhex(r["public_key"]) for r in rows}

    def load_confirmations(self) -> set[tuple[str, int]]:
        rows = self._conn.execute("SELECT owner, tx_id FROM confirmations").fetchall()
        return {(r["owner"], r["tx_id"]) for r in rows}

    def load_nonces(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT * FROM nonces").fetchall()
        return {r["caller"]: r["nonce"] for r in rows}

    def load_declared_classes(self) -> set[int]:
        rows = self._conn.execute("SELECT class_hash FROM declared_classes").fetchall()
        return {int(r["class_hash"], 16) for r in rows}

    def load_deployments(self) -> list[Any]:
        from quorumvault_core.account import Deployment

        rows = self._conn.execute("SELECT * FROM deployments ORDER BY position").fetchall()
        return [
            Deployment(
                class_hash=int(r["class_hash"], 16),
                salt=int(r["salt"], 16),
                public_key=bytes.fromhex(r["public_key"]),
                deployer=r["deployer"],
            )
            for r in rows
        ]

    def has_state(self) -> bool:
        row = self._conn.execute("SELECT 1 FROM vault_config WHERE id = 1").fetchone()
        return row is not None

    # ── bulk helpers ─────────────────────────────────────────────

    def _write(
        self,
        state: Any,
        records,
        confirmations,
        public_keys: dict[str, bytes],
        declarations,
        deployments,
        nonces: dict[str, int] | None,
        write_owners: bool,
    ) -> None:
        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")
            c.execute(
                """INSERT OR REPLACE INTO vault_config (id, threshold, last_tx_id)
                   VALUES (1, ?, ?)""",
                (state.threshold, state.ledger.last_tx_id),
            )
            if write_owners:
                c.executemany(
                    "INSERT INTO owners (position, address) VALUES (?, ?)",
                    list(enumerate(state.owners.to_list())),
                )
            c.executemany(
                "INSERT OR REPLACE INTO public_keys (address, public_key) VALUES (?, ?)",
                [(addr, key.hex()) for addr, key in public_keys.items()],
            )
            c.executemany(
                """INSERT OR REPLACE INTO call_records
                   (tx_id, target, selector, payload_json, confirmations, executed)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [self._record_row(r) for r in records],
            )
            c.executemany(
                "INSERT OR IGNORE INTO confirmations (owner, tx_id) VALUES (?, ?)",
                sorted(confirmations),
            )
            c.executemany(
                "INSERT OR IGNORE INTO declared_classes (class_hash) VALUES (?)",
                [(hex(h),) for h in declarations],
            )
            c.executemany(
                """INSERT OR REPLACE INTO deployments
                   (position, class_hash, salt, public_key, deployer)
                   VALUES (?, ?, ?, ?, ?)""",
                [
                    (pos, hex(d.class_hash), hex(d.salt), d.public_key.hex(), d.deployer)
                    for pos, d in deployments
                ],
            )
            if nonces:
                c.executemany(
                    "INSERT OR REPLACE INTO nonces (caller, nonce) VALUES (?, ?)",
                    list(nonces.items()),
                )
            c.execute("COMMIT")
        except Exception:
            if c.in_transaction:
                c.execute("ROLLBACK")
            raise

    def _check_owners(self, state: Any) -> bool:
        """True when the owner rows still have to be written."""
        stored_owners = self.load_owners()
        if stored_owners and stored_owners != state.owners.to_list():
            raise RuntimeError("Stored owner set differs from the vault being saved")
        return not stored_owners

    def snapshot_state(self, state: Any, nonces: dict[str, int] | None = None) -> None:
        """Persist the full current vault state atomically.

        All writes are wrapped in a single transaction so a crash mid-write
        never leaves a partial snapshot behind.
        """
        write_owners = self._check_owners(state)
        self._write(
            state,
            records=state.ledger.records.values(),
            confirmations=state.tracker.confirmed,
            public_keys=state.public_keys.keys,
            declarations=state.declared_classes,
            deployments=list(enumerate(state.deployments)),
            nonces=nonces,
            write_owners=write_owners,
        )

    def save_changes(self, state: Any, nonces: dict[str, int] | None = None) -> None:
        """Persist only what the open request touched (see ``VaultState.begin``).

        Falls back to a full snapshot for a store that holds no vault yet.
        """
        if not self.has_state():
            self.snapshot_state(state, nonces)
            return
        self._check_owners(state)
        ledger = state.ledger
        self._write(
            state,
            records=[ledger.records[tx_id] for tx_id in sorted(ledger.changes())],
            confirmations=state.tracker.changes(),
            public_keys=state.public_keys.changes(),
            declarations=state.new_declarations(),
            deployments=state.new_deployments(),
            nonces=nonces,
            write_owners=False,
        )

    def restore_state(self) -> tuple[Any, dict[str, int]] | None:
        """
        Rebuild a VaultState (and host nonces) from the database, or
        return None when nothing has been stored yet.
        """
        from quorumvault_core.account import VaultState

        row = self._conn.execute(
            "SELECT threshold, last_tx_id FROM vault_config WHERE id = 1"
        ).fetchone()
        if row is None:
            return None

        state = VaultState.initialize(self.load_owners(), row["threshold"])
        state.public_keys.keys.update(self.load_public_keys())
        for record in self.load_call_records():
            state.ledger.records[record.tx_id] = record
        state.ledger.last_tx_id = row["last_tx_id"]
        state.tracker.load(self.load_confirmations())
        state.declared_classes.update(self.load_declared_classes())
        state.deployments.extend(self.load_deployments())

        ok, msg = verify_state(state)
        if not ok:
            raise RuntimeError(f"Stored vault state is inconsistent: {msg}")
        logger.info(
            f"Restored vault: {state.threshold}-of-{state.owners.num_owners}, "
            f"{state.ledger.last_tx_id} transactions"
        )
        return state, self.load_nonces()

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
