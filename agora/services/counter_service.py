"""
agora.services.counter_service — Counter Ledger
================================================

Maintains the derived counters ``posts.likes_count``,
``posts.comments_count`` and ``comments.replies_count``.

Every adjustment is ONE statement against the store::

    UPDATE posts SET likes_count = likes_count + :delta WHERE id = :id
    RETURNING likes_count

so N concurrent callers always end at ``initial + Σ delta`` whatever the
interleaving.  The value is never fetched, changed in Python and written
back.

Decrements are guarded (``WHERE likes_count + :delta >= 0``).  If the guard
rejects an existing row, a clamping update pins the counter at zero and the
event is logged as an anomaly: it means something upstream removed the same
record twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from agora.database.models import Comment, Post
from agora.errors import NotFoundError, UnknownCounterError

logger = logging.getLogger(__name__)


# counter name → (model, column attribute name)
COUNTERS: dict[str, tuple[type, str]] = {
    "post.likes_count": (Post, "likes_count"),
    "post.comments_count": (Post, "comments_count"),
    "comment.replies_count": (Comment, "replies_count"),
}

POST_LIKES = "post.likes_count"
POST_COMMENTS = "post.comments_count"
COMMENT_REPLIES = "comment.replies_count"


@dataclass(frozen=True, slots=True)
class AdjustResult:
    """New counter value; ``clamped`` flags a decrement that hit zero early."""

    value: int
    clamped: bool = False


def _resolve(counter_name: str):
    try:
        model, attr = COUNTERS[counter_name]
    except KeyError:
        raise UnknownCounterError(counter_name) from None
    return model, getattr(model, attr)


def adjust(session: Session, entity_id: int, counter_name: str, delta: int) -> AdjustResult:
    """Atomically move *counter_name* on *entity_id* by *delta*.

    Runs inside the caller's transaction.  Raises :class:`NotFoundError`
    if the entity row does not exist.
    """
    model, column = _resolve(counter_name)
    if delta == 0:
        value = session.scalar(select(column).where(model.id == entity_id))
        if value is None:
            raise NotFoundError(model.__name__, entity_id)
        return AdjustResult(value)

    stmt = (
        update(model)
        .where(model.id == entity_id)
        .values({column: column + delta})
        .returning(column)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(column + delta >= 0)

    value = session.execute(stmt).scalar_one_or_none()
    if value is not None:
        return AdjustResult(value)

    if delta > 0:
        raise NotFoundError(model.__name__, entity_id)

    # Guard rejected the decrement (or the row is missing).  Clamp in a
    # single statement; concurrent increments in between still count.
    clamped_stmt = (
        update(model)
        .where(model.id == entity_id)
        .values({column: case((column + delta < 0, 0), else_=column + delta)})
        .returning(column)
        .execution_options(synchronize_session=False)
    )
    value = session.execute(clamped_stmt).scalar_one_or_none()
    if value is None:
        raise NotFoundError(model.__name__, entity_id)

    logger.warning(
        "Counter anomaly: %s on %s=%d would go negative (delta=%d); clamped to %d",
        counter_name, model.__name__, entity_id, delta, value,
    )
    return AdjustResult(value, clamped=True)


def read(session: Session, entity_id: int, counter_name: str) -> int:
    """Current stored value of a counter."""
    return adjust(session, entity_id, counter_name, 0).value
