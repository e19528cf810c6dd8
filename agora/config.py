"""
agora.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for **infrastructure-only** settings (community
identity, connection pool sizing, log level, notification toggle).  Point
awards and level thresholds live in the ``settings`` database table and are
read through :class:`~agora.engine.cache.ConfigCache`.

Usage::

    from agora.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.community_name)    # "Agora"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass(frozen=True, slots=True)
class AgoraConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Database pool
    pool_size: int = 5
    max_overflow: int = 10

    # Ops
    log_level: str = "INFO"
    notifications_enabled: bool = True


def load_config(path: str | Path = "config.yaml") -> AgoraConfig:
    """Read *path* and return an :class:`AgoraConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    database = raw.get("database") or {}
    return AgoraConfig(
        community_name=raw["community_name"],
        pool_size=int(database.get("pool_size", 5)),
        max_overflow=int(database.get("max_overflow", 10)),
        log_level=str(raw.get("log_level", "INFO")).upper(),
        notifications_enabled=bool(raw.get("notifications_enabled", True)),
    )
