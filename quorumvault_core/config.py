"""
TOML-based configuration for QuorumVault.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from quorumvault_core.config import load_config
    cfg = load_config("quorumvault.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class VaultConfig:
    """Owner set and quorum, fixed once the vault is initialised."""
    address: str = "0x1"
    owners: list[str] = field(default_factory=list)
    threshold: int = 2


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    max_body_bytes: int = 1_048_576    # 1 MiB max request body


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/quorumvault.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class QuorumVaultConfig:
    """Top-level configuration container."""
    vault: VaultConfig = field(default_factory=VaultConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def load_config(path: str | None = None) -> QuorumVaultConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        QUORUMVAULT_ADDRESS    -> vault.address
        QUORUMVAULT_OWNERS     -> vault.owners   (comma-separated)
        QUORUMVAULT_THRESHOLD  -> vault.threshold
        QUORUMVAULT_API_PORT   -> api.port  (also enables the API)
        QUORUMVAULT_API_KEY    -> api.api_key
        QUORUMVAULT_LOG_LEVEL  -> logging.level
        QUORUMVAULT_LOG_FMT    -> logging.format
        QUORUMVAULT_DB_PATH    -> storage.path  (also enables storage)
    """
    cfg = QuorumVaultConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("vault", cfg.vault),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("QUORUMVAULT_ADDRESS"):
        cfg.vault.address = v
    if v := os.environ.get("QUORUMVAULT_OWNERS"):
        cfg.vault.owners = _split(v)
    if v := os.environ.get("QUORUMVAULT_THRESHOLD"):
        cfg.vault.threshold = int(v)
    if v := os.environ.get("QUORUMVAULT_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("QUORUMVAULT_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("QUORUMVAULT_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("QUORUMVAULT_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("QUORUMVAULT_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
