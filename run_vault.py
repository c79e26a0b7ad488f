#!/usr/bin/env python3
"""
QuorumVault runner: starts a multisig vault with
  - the owner set and threshold from config / flags
  - SQLite persistence (state restored on restart)
  - the HTTP API

Usage:
    python run_vault.py --owners 0xa11ce,0xb0b,0xca1 --threshold 2 --port 8080

Environment variables (alternative to flags):
    QUORUMVAULT_OWNERS, QUORUMVAULT_THRESHOLD, QUORUMVAULT_API_PORT, QUORUMVAULT_DB_PATH
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging

from quorumvault_core.account import MultisigAccount
from quorumvault_core.api import APIServer
from quorumvault_core.config import QuorumVaultConfig, load_config
from quorumvault_core.crypto_utils import normalize_address, to_field_element
from quorumvault_core.errors import ConfigurationError
from quorumvault_core.gateway import LocalGateway
from quorumvault_core.host import AccountHost
from quorumvault_core.logging_config import setup_logging
from quorumvault_core.owners import OwnerRegistry
from quorumvault_core.storage import VaultStore

logger = logging.getLogger("quorumvault_node")


def _echo_handler(selector: int, payload: tuple) -> bytes:
    """Dev target: returns the payload as 32-byte big-endian words."""
    return b"".join(x.to_bytes(32, "big") for x in payload)


def build_vault(cfg: QuorumVaultConfig, gateway: LocalGateway | None = None) -> AccountHost:
    """Create (or restore) the account and wrap it in a host.

    Raises ConfigurationError (InvalidOwnerAddress, InvalidThreshold, ...)
    when the configured vault cannot be built.
    """
    gateway = gateway or LocalGateway()
    try:
        vault_address = normalize_address(cfg.vault.address)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"vault.address: {exc}") from exc

    store = VaultStore(cfg.storage.path) if cfg.storage.enabled else None
    try:
        restored = store.restore_state() if store is not None else None
        if restored is not None:
            state, nonces = restored
            if cfg.vault.owners and OwnerRegistry(cfg.vault.owners).to_list() != state.owners.to_list():
                logger.warning("Configured owners differ from stored vault; using stored owners")
            account = MultisigAccount.from_state(state, gateway=gateway)
        else:
            account = MultisigAccount(cfg.vault.owners, cfg.vault.threshold, gateway=gateway)
            nonces = {}
    except ConfigurationError:
        if store is not None:
            store.close()
        raise
    host = AccountHost(account, address=vault_address, store=store, nonces=nonces)
    if store is not None and restored is None:
        store.snapshot_state(account.state, host.nonces)
    return host


def parse_args():
    p = argparse.ArgumentParser(description="QuorumVault multisig node")
    p.add_argument("--config", default=None, help="Path to quorumvault.toml config file")
    p.add_argument("--owners", default="", help="Comma-separated owner addresses")
    p.add_argument("--threshold", type=int, default=None, help="Confirmations required")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite database path (enables storage)")
    p.add_argument("--echo-target", default=None,
                   help="Register a dev echo handler at this target address")
    return p.parse_args()


async def main():
    args = parse_args()
    cfg = load_config(args.config)

    # CLI flags override config
    if args.owners:
        cfg.vault.owners = [o.strip() for o in args.owners.split(",") if o.strip()]
    if args.threshold is not None:
        cfg.vault.threshold = args.threshold
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    gateway = LocalGateway()
    try:
        if args.echo_target:
            gateway.register(to_field_element(args.echo_target), _echo_handler)
        host = build_vault(cfg, gateway)
    except (ConfigurationError, ValueError) as exc:
        logger.error(f"Cannot start vault: {exc}", extra={"code": getattr(exc, "code", None)})
        raise SystemExit(2) from exc
    if not cfg.api.enabled:
        logger.warning("API disabled in config; nothing to serve")
        if host.store is not None:
            host.store.close()
        return

    api = APIServer(host, cfg.api.host, cfg.api.port, api_config=cfg.api)
    await api.start()
    try:
        while True:
            await asyncio.sleep(1)
    finally:
        await api.stop()
        if host.store is not None:
            host.store.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
