"""
agora.services.reputation_service — Reputation Ledger
======================================================

Appends point events to ``reputation_events`` and moves the user's cached
totals in the same transaction.

``users.points_balance`` holds the raw signed sum of every delta and
``users.points`` holds ``max(0, points_balance)``; ``users.level`` is
derived from ``points`` through the configured threshold table.  All three
columns move in a single ``UPDATE`` whose right-hand side only references
the row's own previous values, so concurrent events never lose an update
and the displayed total never dips below zero.

Events carrying a ``source_key`` (``comment:42``, ``post:7``,
``lesson:3:12``) are idempotent: the partial unique index rejects the
duplicate inside a SAVEPOINT and the current total is returned unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import Engine, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agora.constants import level_thresholds
from agora.database.engine import get_session
from agora.database.models import ReputationEvent, User
from agora.engine.cache import ConfigCache
from agora.engine.principal import Principal, load_actor
from agora.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def level_expression(points_expr, thresholds: Sequence[int]):
    """SQL ``CASE`` mirroring :func:`agora.constants.level_for_points`."""
    whens = [
        (points_expr >= threshold, level)
        for level, threshold in reversed(list(enumerate(thresholds, start=1)))
        if threshold > 0
    ]
    if not whens:
        return 1
    return case(*whens, else_=1)


def apply_event(
    session: Session,
    user_id: int,
    delta: int,
    reason: str,
    *,
    source_key: str | None = None,
    cache: ConfigCache | None = None,
) -> int:
    """Record a point event for *user_id* and return the new displayed total.

    Runs inside the caller's transaction: if anything later in that
    transaction fails, the event and the total roll back together.
    """
    if session.scalar(select(User.id).where(User.id == user_id)) is None:
        raise NotFoundError("User", user_id)

    event = ReputationEvent(
        user_id=user_id, delta=delta, reason=reason, source_key=source_key,
    )
    if source_key is not None:
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(event)
                session.flush()
        except IntegrityError:
            # Already applied under this key; the outer txn is still alive.
            logger.debug("Reputation event %s already recorded", source_key)
            return current_points(session, user_id)
    else:
        session.add(event)
        session.flush()

    new_balance = User.points_balance + delta
    new_points = case((new_balance < 0, 0), else_=new_balance)
    stmt = (
        update(User)
        .where(User.id == user_id)
        .values(
            points_balance=new_balance,
            points=new_points,
            level=level_expression(new_points, level_thresholds(cache)),
        )
        .returning(User.points, User.level)
        .execution_options(synchronize_session=False)
    )
    row = session.execute(stmt).one_or_none()
    if row is None:
        raise NotFoundError("User", user_id)

    logger.info(
        "Reputation %+d for user %d (%s) → %d pts, level %d",
        delta, user_id, reason, row.points, row.level,
    )
    return row.points


def revoke_event(
    session: Session,
    source_key: str,
    reason: str,
    *,
    cache: ConfigCache | None = None,
) -> int | None:
    """Reverse the event recorded under *source_key*, once.

    The reversal is itself keyed (``<source_key>:revoke``).  Returns the
    owner's new total, or ``None`` when nothing was recorded under the key.
    """
    original = session.scalar(
        select(ReputationEvent).where(ReputationEvent.source_key == source_key)
    )
    if original is None:
        return None
    return apply_event(
        session,
        original.user_id,
        -original.delta,
        reason,
        source_key=f"{source_key}:revoke",
        cache=cache,
    )


def current_points(session: Session, user_id: int) -> int:
    points = session.scalar(select(User.points).where(User.id == user_id))
    if points is None:
        raise NotFoundError("User", user_id)
    return points


def get_ledger_total(session: Session, user_id: int) -> int:
    """``max(0, Σ delta)`` recomputed from the raw journal."""
    total = session.scalar(
        select(func.coalesce(func.sum(ReputationEvent.delta), 0)).where(
            ReputationEvent.user_id == user_id
        )
    )
    return max(0, int(total or 0))


def get_history(session: Session, user_id: int, limit: int = 50) -> list[ReputationEvent]:
    """Most recent events first."""
    return list(session.scalars(
        select(ReputationEvent)
        .where(ReputationEvent.user_id == user_id)
        .order_by(ReputationEvent.id.desc())
        .limit(limit)
    ).all())


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
LEADERBOARD_MAX = 100


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: int
    name: str
    username: str
    avatar: str | None
    points: int
    level: int


def get_leaderboard(
    engine: Engine,
    principal: Principal,
    limit: int = LEADERBOARD_MAX,
) -> list[LeaderboardEntry]:
    """Top members by displayed points; ties keep registration order."""
    if not 1 <= limit <= LEADERBOARD_MAX:
        raise ValidationError(
            f"limit must be between 1 and {LEADERBOARD_MAX}", "invalid_limit",
        )
    with get_session(engine) as session:
        load_actor(session, principal)
        rows = session.execute(
            select(User.id, User.name, User.username, User.avatar, User.points, User.level)
            .order_by(User.points.desc(), User.id)
            .limit(limit)
        ).all()

    return [
        LeaderboardEntry(
            rank=rank,
            user_id=row.id,
            name=row.name,
            username=row.username,
            avatar=row.avatar,
            points=row.points,
            level=row.level,
        )
        for rank, row in enumerate(rows, start=1)
    ]
