"""
agora.database.seed — Default Settings Seeder
==============================================

Baseline tuning settings seeded on first startup (point awards and the
level threshold table).

Idempotent — only inserts keys that don't already exist.  Settings
changed later by admins are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from agora.constants import (
    DEFAULT_LEVEL_THRESHOLDS,
    POINTS_COMMENT,
    POINTS_LESSON_DEFAULT,
    POINTS_LIKE,
    POINTS_POST,
)
from agora.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "reputation.points_post": (POINTS_POST, "reputation", "Points for creating a post"),
    "reputation.points_comment": (
        POINTS_COMMENT, "reputation", "Points for posting a comment or reply",
    ),
    "reputation.points_like": (
        POINTS_LIKE, "reputation", "Points for liking a post (revoked on unlike)",
    ),
    "reputation.points_lesson_default": (
        POINTS_LESSON_DEFAULT, "reputation",
        "Points for completing a lesson that has no explicit value",
    ),
    "reputation.level_thresholds": (
        list(DEFAULT_LEVEL_THRESHOLDS), "reputation",
        "Ascending point totals that unlock levels 1, 2, 3, …",
    ),
    "reputation.revoke_on_delete": (
        True, "reputation", "Revoke creation points when content is deleted",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist.

    Safe to call repeatedly.
    """
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
