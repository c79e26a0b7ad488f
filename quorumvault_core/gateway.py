"""
Execution gateway for QuorumVault.

The gateway performs the actual delegated call once a transaction has
reached quorum:

    dispatch(target, selector, payload) -> result bytes

A failing dispatch raises, which aborts the enclosing execute request
(the vault state is rolled back and the record stays unexecuted).

``LocalGateway`` routes calls to Python callables registered per target,
which is what the runner and the tests use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from quorumvault_core.errors import DispatchFailed

logger = logging.getLogger("quorumvault_gateway")

# handler(selector, payload) -> result bytes
TargetHandler = Callable[[int, tuple], bytes]


@dataclass
class DispatchTrace:
    """Record of one completed dispatch."""
    target: int
    selector: int
    payload: tuple[int, ...]
    result: bytes
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "target": hex(self.target),
            "selector": hex(self.selector),
            "payload": [hex(x) for x in self.payload],
            "result": self.result.hex(),
        }


class ExecutionGateway:
    """Interface consumed by the account's execute path."""

    def dispatch(self, target: int, selector: int, payload: tuple[int, ...]) -> bytes:
        raise NotImplementedError


class LocalGateway(ExecutionGateway):
    """In-process gateway: targets are Python callables."""

    def __init__(self):
        self.handlers: dict[int, TargetHandler] = {}
        self.traces: list[DispatchTrace] = []

    def register(self, target: int, handler: TargetHandler) -> None:
        self.handlers[target] = handler

    def unregister(self, target: int) -> bool:
        return self.handlers.pop(target, None) is not None

    def dispatch(self, target: int, selector: int, payload: tuple[int, ...]) -> bytes:
        handler = self.handlers.get(target)
        if handler is None:
            raise DispatchFailed(f"No handler registered for target {hex(target)}")
        try:
            result = handler(selector, tuple(payload))
        except DispatchFailed:
            raise
        except Exception as exc:
            raise DispatchFailed(f"Call to {hex(target)} failed: {exc}") from exc
        if result is None:
            result = b""
        elif not isinstance(result, (bytes, bytearray)):
            raise DispatchFailed(
                f"Handler for {hex(target)} returned {type(result).__name__}, expected bytes"
            )
        self.traces.append(DispatchTrace(target, selector, tuple(payload), bytes(result)))
        logger.debug(f"Dispatched {hex(selector)} to {hex(target)} ({len(result)} bytes)")
        return bytes(result)
