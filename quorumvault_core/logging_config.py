"""
Logging setup for the QuorumVault process.

Vault loggers are named ``quorumvault_<area>`` (account, host, storage,
api, node) and attach request context through ``extra=``::

    logger.info("Confirmed (2/3)", extra={"caller": owner, "tx_id": 7})

The recognised context keys are listed in ``CONTEXT_FIELDS``.  The JSON
formatter emits them as top-level keys; the console formatter appends
them as ``key=value`` pairs after the message.  Records from other
libraries carry no context and are rendered unchanged.

Usage:
    from quorumvault_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="data/vault.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

CONTEXT_FIELDS = ("entrypoint", "caller", "tx_id", "code")

# aiohttp's access log duplicates what the API middlewares already report.
THIRD_PARTY_LOGGERS = ("aiohttp.access", "aiohttp.server", "aiohttp.web")


def record_context(record: logging.LogRecord) -> dict:
    """Vault context attached to *record*, in CONTEXT_FIELDS order."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class _JSONFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, area, msg, context."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.name.startswith("quorumvault_"):
            entry["area"] = record.name[len("quorumvault_"):]
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _HumanFormatter(logging.Formatter):
    """Single console line; colour only when *colour* is set."""

    LEVEL_COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"[{record.levelname:<7}]"
        if self.colour:
            level = f"{self.LEVEL_COLOURS.get(record.levelno, '')}{level}{self.RESET}"
        parts = [ts, level, f"{record.name}: {record.getMessage()}"]
        parts.extend(f"{k}={v}" for k, v in record_context(record).items())
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
    quiet_third_party: bool = True,
) -> None:
    """
    Replace the root handlers with a console handler and, optionally, a
    JSON file handler.

    ``fmt="json"`` switches the console to JSON too; ``"human"`` colours
    the output only when stderr is a terminal.  Unknown level names fall
    back to INFO.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())
        root.addHandler(fh)

    if quiet_third_party:
        for name in THIRD_PARTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
