"""
agora.engine.cache — In-Memory Settings Cache
==============================================

Tuning values (point awards, level thresholds) are read on every mutation,
so they are cached in memory and refreshed with :meth:`ConfigCache.reload`
after an admin edit (see :func:`agora.services.admin_service.update_setting`).
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from agora.database.models import Setting

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class ConfigCache:
    """Thread-safe in-memory view of the ``settings`` table.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()

        points = cache.get_int("reputation.points_comment", 3)
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        # key → parsed JSON value
        self._settings: dict[str, Any] = {}

    # -------------------------------------------------------------------
    # Cache loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load every setting from the DB. Call on startup."""
        if self._engine is None:
            return
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        with self._lock:
            self._settings = parsed
        logger.info("ConfigCache loaded: %d settings", len(parsed))

    reload = load_all

    def set_local(self, key: str, value: Any) -> None:
        """Override a value in memory only (tests, one-off tuning)."""
        with self._lock:
            self._settings[key] = value

    # -------------------------------------------------------------------
    # Typed setting accessors (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        if isinstance(val, bool):
            return val
        if isinstance(val, str):
            return val.strip().lower() in ("1", "true", "yes", "on")
        return bool(val)

    def get_list(self, key: str, default: list | None = None) -> list:
        val = self.get_setting(key)
        if isinstance(val, list):
            return list(val)
        return list(default or [])


_default_cache: ConfigCache | None = None


def get_default_cache() -> ConfigCache:
    """Empty cache used when callers pass none — every accessor falls back
    to its default, i.e. the constants in :mod:`agora.constants`."""
    global _default_cache
    if _default_cache is None:
        _default_cache = ConfigCache()
    return _default_cache
