"""
Vault notifications.

The account emits an event for every submitted, confirmed and executed
transaction.  Events raised inside a request are buffered and only handed
to the sink once that request commits, so a rolled-back request never
leaves a notification behind.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger("quorumvault_events")


class EventKind(Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"


@dataclass
class VaultEvent:
    kind: EventKind
    account: str      # owner who submitted/confirmed, or whoever triggered execution
    tx_id: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "account": self.account,
            "tx_id": self.tx_id,
            "timestamp": self.timestamp,
        }


class EventSink:
    """Receives committed events.  Subclass to forward them elsewhere."""

    def publish(self, event: VaultEvent) -> None:
        raise NotImplementedError


class EventLog(EventSink):
    """Keeps every published event in memory."""

    def __init__(self):
        self.events: list[VaultEvent] = []

    def publish(self, event: VaultEvent) -> None:
        self.events.append(event)
        logger.info(f"{event.kind.value} tx={event.tx_id} by {event.account}")

    def for_tx(self, tx_id: int) -> list[VaultEvent]:
        return [e for e in self.events if e.tx_id == tx_id]

    def of_kind(self, kind: EventKind) -> list[VaultEvent]:
        return [e for e in self.events if e.kind is kind]
