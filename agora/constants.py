"""
agora.constants — Shared Constants & Helpers
=============================================

Single source of truth for roles, lifecycle states, point awards and the
leveling formula.  Import from here instead of duplicating in services.
"""

from __future__ import annotations

import enum
from bisect import bisect_right
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agora.engine.cache import ConfigCache


# ---------------------------------------------------------------------------
# Roles & lifecycle states
# ---------------------------------------------------------------------------
class Role(enum.StrEnum):
    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"


class ApprovalStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AccessState(enum.StrEnum):
    """Reversible access tag — driven by active rows in ``user_bans``."""
    ACTIVE = "active"
    BANNED = "banned"


class EmailBlock(enum.StrEnum):
    """Permanent deny-list tag — driven by ``banned_emails``, outlives accounts."""
    ALLOWED = "allowed"
    DENY_LISTED = "deny_listed"


STAFF_ROLES: frozenset[Role] = frozenset({Role.MODERATOR, Role.ADMIN})

# (from, to) pairs the moderation state machine accepts.
APPROVAL_TRANSITIONS: frozenset[tuple[ApprovalStatus, ApprovalStatus]] = frozenset({
    (ApprovalStatus.PENDING, ApprovalStatus.APPROVED),
    (ApprovalStatus.PENDING, ApprovalStatus.REJECTED),
    (ApprovalStatus.REJECTED, ApprovalStatus.APPROVED),
})

# Profile fields only staff may change, and never on their own row.
PRIVILEGED_PROFILE_FIELDS: frozenset[str] = frozenset({"role", "approval_status"})

# Fields a user may edit on their own profile.
EDITABLE_PROFILE_FIELDS: frozenset[str] = frozenset({
    "name", "username", "avatar", "bio",
})


# ---------------------------------------------------------------------------
# Point awards (defaults; live values come from the settings table)
# ---------------------------------------------------------------------------
POINTS_POST = 5
POINTS_COMMENT = 3
POINTS_LIKE = 2
POINTS_LESSON_DEFAULT = 10

DEFAULT_LEVEL_THRESHOLDS: tuple[int, ...] = (0, 100, 200, 300, 500, 800, 1200)


# ---------------------------------------------------------------------------
# Leveling formula — THE single canonical implementation
# ---------------------------------------------------------------------------
def level_thresholds(cache: ConfigCache | None = None) -> tuple[int, ...]:
    """Points required to reach each level, ascending; index 0 is level 1.

    Read from ``reputation.level_thresholds`` via *cache*.  Falls back to
    :data:`DEFAULT_LEVEL_THRESHOLDS` when the cache is unavailable or the
    stored table is malformed.
    """
    if cache is None:
        return DEFAULT_LEVEL_THRESHOLDS
    raw = cache.get_list("reputation.level_thresholds", list(DEFAULT_LEVEL_THRESHOLDS))
    try:
        table = tuple(int(v) for v in raw)
    except (TypeError, ValueError):
        return DEFAULT_LEVEL_THRESHOLDS
    if not table or table[0] != 0 or list(table) != sorted(set(table)):
        return DEFAULT_LEVEL_THRESHOLDS
    return table


def level_for_points(points: int, thresholds: Sequence[int] = DEFAULT_LEVEL_THRESHOLDS) -> int:
    """Monotonic step function: level 1 + number of thresholds passed above 0.

    >>> level_for_points(0)
    1
    >>> level_for_points(100)
    2
    """
    return max(1, bisect_right(thresholds, max(points, 0)))


def normalize_email(email: str) -> str:
    return email.strip().lower()
